import threading
from typing import Optional


class CancellationToken:
    """Thread-safe cancel flag shared between a caller and a long operation"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to timeout seconds; True if cancelled meanwhile"""
        return self._event.wait(timeout)


def is_cancelled(token: Optional[CancellationToken]) -> bool:
    return token is not None and token.cancelled


def sleep_unless_cancelled(token: Optional[CancellationToken], seconds: float) -> None:
    """Pause between work items; returns early on cancellation"""
    if seconds <= 0:
        return
    if token is None:
        threading.Event().wait(seconds)
    else:
        token.wait(seconds)
