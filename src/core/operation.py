"""Progress-reporting long operations.

Every long-running engine operation is a generator function: it yields
progress objects and ``return``s its result. ``run_operation`` drains one
on the calling thread; ``BackgroundOperation`` drains it on a worker pool
and exposes the events as a pollable stream.
"""
import logging
import queue
from concurrent.futures import Executor, Future
from typing import Any, Callable, Generator, Iterator, Optional, TypeVar

from core.cancellation import CancellationToken

logger = logging.getLogger(__name__)

P = TypeVar('P')
R = TypeVar('R')

Operation = Generator[P, None, R]


def run_operation(operation: Operation, on_progress: Optional[Callable[[Any], None]] = None) -> Any:
    """Drain an operation generator and return its result"""
    while True:
        try:
            event = next(operation)
        except StopIteration as stop:
            return stop.value
        if on_progress is not None:
            on_progress(event)


class BackgroundOperation:
    """Runs an operation generator on an executor"""

    _DONE = object()

    def __init__(self, operation_factory: Callable[[CancellationToken], Operation],
                 executor: Executor, token: Optional[CancellationToken] = None):
        self.token = token or CancellationToken()
        self._events: 'queue.Queue[Any]' = queue.Queue()
        self._future: Future = executor.submit(self._run, operation_factory)

    def _run(self, operation_factory: Callable[[CancellationToken], Operation]) -> Any:
        try:
            return run_operation(operation_factory(self.token), self._events.put)
        finally:
            self._events.put(self._DONE)

    def events(self, timeout: Optional[float] = None) -> Iterator[Any]:
        """Yield progress events until the operation finishes.

        Raises queue.Empty when no event arrives within ``timeout``.
        """
        while True:
            event = self._events.get(timeout=timeout)
            if event is self._DONE:
                return
            yield event

    def poll(self) -> list:
        """Return the events queued so far without blocking"""
        pending = []
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return pending
            if event is self._DONE:
                self._events.put(self._DONE)
                return pending
            pending.append(event)

    def result(self, timeout: Optional[float] = None) -> Any:
        return self._future.result(timeout)

    def cancel(self) -> None:
        self.token.cancel()

    def done(self) -> bool:
        return self._future.done()
