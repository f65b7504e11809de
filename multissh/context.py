"""
Per-run shared state: cancellation signal, admission gate and the context
handed to every host task.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Optional

from .config import RunConfig
from .models import Job

if TYPE_CHECKING:
    from .collector import ResultCollector
    from .logger import StructuredLogger

# Author: Vamsi


class CancelReason(Enum):
    """Why a run was cancelled."""
    DEADLINE = "deadline"
    STOPPED = "stopped"


class CancelToken:
    """
    Cooperative cancellation signal for one run.

    Host tasks poll ``cancelled`` between blocking steps and register close
    callbacks for the resources they hold, so a cancellation also unblocks
    reads that are waiting on the network.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: Dict[int, Callable[[], None]] = {}
        self._next_id = 0
        self.reason: Optional[CancelReason] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: CancelReason = CancelReason.STOPPED) -> bool:
        """
        Cancel the run and fire every registered callback.

        :param reason: Why the run is cancelled
        :return: False if the token was already cancelled
        """
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()

        for callback in callbacks:
            callback()
        return True

    def register(self, callback: Callable[[], None]) -> Optional[int]:
        """
        Register a callback fired on cancellation.

        If the token is already cancelled the callback runs immediately.

        :param callback: Callable without arguments, must not raise
        :return: Handle for unregister, None if the callback already ran
        """
        with self._lock:
            if not self._event.is_set():
                handle = self._next_id
                self._next_id += 1
                self._callbacks[handle] = callback
                return handle
        callback()
        return None

    def unregister(self, handle: Optional[int]):
        if handle is None:
            return
        with self._lock:
            self._callbacks.pop(handle, None)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


class Limiter:
    """
    Admission gate bounding how many hosts are connecting or executing.

    Records the current and peak number of admitted hosts. Once closed, no
    further host is admitted.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self._semaphore = threading.Semaphore(limit)
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self.in_flight = 0
        self.peak = 0
        self.admitted = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self):
        """Stop admitting hosts, hosts already admitted are unaffected."""
        self._closed.set()

    def acquire(self, token: CancelToken, poll_interval: float = 0.05) -> bool:
        """
        Wait for a free slot.

        :param token: Run cancellation signal
        :param poll_interval: How often to re-check cancellation while waiting
        :return: True if admitted, False if the run was cancelled or the gate closed
        """
        while True:
            if token.cancelled or self.closed:
                return False
            if self._semaphore.acquire(timeout=poll_interval):
                break

        if token.cancelled or self.closed:
            self._semaphore.release()
            return False

        with self._lock:
            self.in_flight += 1
            self.admitted += 1
            self.peak = max(self.peak, self.in_flight)
        return True

    def release(self):
        with self._lock:
            self.in_flight -= 1
        self._semaphore.release()

    @contextmanager
    def slot(self, token: CancelToken, poll_interval: float = 0.05):
        """
        Context manager holding one slot for its body.

        :yield: True if admitted, False otherwise
        """
        admitted = self.acquire(token, poll_interval)
        try:
            yield admitted
        finally:
            if admitted:
                self.release()


class Deadline:
    """Monotonic point in time, or no bound at all when ``seconds`` is None."""

    def __init__(self, seconds: Optional[float]):
        self.seconds = seconds
        self.expires_at = None if seconds is None else time.monotonic() + seconds

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def bound(self, value: Optional[float]) -> Optional[float]:
        """Smallest of ``value`` and the remaining time, ignoring Nones."""
        remaining = self.remaining()
        if remaining is None:
            return value
        if value is None:
            return remaining
        return min(value, remaining)


@dataclass
class RunContext:
    """Everything a host task needs, passed explicitly to each task."""
    job: Job
    config: RunConfig
    token: CancelToken
    limiter: Limiter
    sink: "ResultCollector"
    logger: "StructuredLogger"
