#!/usr/bin/env python3
"""
Tests for progress-reporting operations and cancellation
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from core.cancellation import CancellationToken, is_cancelled, sleep_unless_cancelled
from core.operation import BackgroundOperation, run_operation


def counting(limit, token=None):
    done = 0
    for i in range(limit):
        if is_cancelled(token):
            break
        done += 1
        yield i
        time.sleep(0.001)
    return done


class TestRunOperation:

    def test_returns_generator_value(self):
        events = []
        assert run_operation(counting(3), events.append) == 3
        assert events == [0, 1, 2]

    def test_without_callback(self):
        assert run_operation(counting(5)) == 5


class TestBackgroundOperation:

    @pytest.fixture
    def executor(self):
        pool = ThreadPoolExecutor(max_workers=2)
        yield pool
        pool.shutdown(wait=True)

    def test_events_and_result(self, executor):
        operation = BackgroundOperation(lambda token: counting(4, token), executor)

        assert list(operation.events(timeout=5)) == [0, 1, 2, 3]
        assert operation.result(timeout=5) == 4
        assert operation.done()

    def test_cancel(self, executor):
        gate = threading.Event()

        def blocked(token):
            yield 'started'
            gate.wait(5)
            return (yield from counting(1000, token))

        operation = BackgroundOperation(blocked, executor)
        operation.cancel()
        gate.set()

        assert operation.result(timeout=5) == 0

    def test_exception_propagates(self, executor):
        def failing(token):
            yield 1
            raise ValueError("bad input")

        operation = BackgroundOperation(failing, executor)

        assert list(operation.events(timeout=5)) == [1]
        with pytest.raises(ValueError):
            operation.result(timeout=5)

    def test_poll(self, executor):
        operation = BackgroundOperation(lambda token: counting(3, token), executor)
        operation.result(timeout=5)

        assert operation.poll() == [0, 1, 2]
        assert operation.poll() == []


class TestCancellationToken:

    def test_flag(self):
        token = CancellationToken()
        assert not is_cancelled(token)
        token.cancel()
        assert token.cancelled
        assert is_cancelled(token)
        assert not is_cancelled(None)

    def test_sleep_returns_early_when_cancelled(self):
        token = CancellationToken()
        threading.Timer(0.05, token.cancel).start()

        start = time.monotonic()
        sleep_unless_cancelled(token, 5.0)

        assert time.monotonic() - start < 2.0


if __name__ == "__main__":
    pytest.main([__file__])
