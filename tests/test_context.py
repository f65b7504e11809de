"""
Tests for cancellation, admission and deadlines.
"""

import threading
import time

import pytest

from multissh.context import CancelReason, CancelToken, Deadline, Limiter


class TestCancelToken:
    """Test the run cancellation signal."""

    def test_cancel_fires_callbacks_once(self):
        token = CancelToken()
        calls = []
        token.register(lambda: calls.append("a"))
        handle = token.register(lambda: calls.append("b"))
        token.unregister(handle)

        assert token.cancel(CancelReason.DEADLINE) is True
        assert token.cancel(CancelReason.STOPPED) is False
        assert calls == ["a"]
        assert token.cancelled
        assert token.reason is CancelReason.DEADLINE

    def test_register_after_cancel_runs_immediately(self):
        token = CancelToken()
        token.cancel()
        calls = []
        assert token.register(lambda: calls.append(1)) is None
        assert calls == [1]
        token.unregister(None)

    def test_wait_wakes_on_cancel(self):
        token = CancelToken()
        threading.Timer(0.05, token.cancel).start()
        assert token.wait(5) is True


class TestLimiter:
    """Test the admission gate."""

    def test_never_exceeds_limit(self):
        limiter = Limiter(3)
        token = CancelToken()
        barrier = threading.Event()

        def worker():
            with limiter.slot(token, 0.01) as admitted:
                assert admitted
                assert limiter.in_flight <= 3
                barrier.wait(0.05)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert limiter.peak <= 3
        assert limiter.admitted == 10
        assert limiter.in_flight == 0

    def test_closed_limiter_refuses(self):
        limiter = Limiter(1)
        limiter.close()
        with limiter.slot(CancelToken(), 0.01) as admitted:
            assert admitted is False
        assert limiter.admitted == 0

    def test_cancel_unblocks_waiter(self):
        limiter = Limiter(1)
        token = CancelToken()
        assert limiter.acquire(token, 0.01)
        threading.Timer(0.05, token.cancel).start()
        assert limiter.acquire(token, 0.01) is False
        limiter.release()

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            Limiter(0)


class TestDeadline:
    """Test deadline arithmetic."""

    def test_unbounded(self):
        deadline = Deadline(None)
        assert deadline.remaining() is None
        assert not deadline.expired
        assert deadline.bound(0.5) == 0.5
        assert deadline.bound(None) is None

    def test_bounded(self):
        deadline = Deadline(0.05)
        assert deadline.bound(10) <= 0.05
        time.sleep(0.06)
        assert deadline.expired
        assert deadline.remaining() == 0.0
