"""Token bucket shared by every worker."""

from __future__ import annotations

import time
from threading import Event, Lock
from typing import Callable


class TokenBucket:
    """Thread-safe token bucket; ``acquire`` waits on the shutdown event."""

    def __init__(
        self,
        rate: float,
        burst: int,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.capacity = float(max(1, burst))
        self._tokens = self.capacity
        self._clock = clock or time.monotonic
        self._updated = self._clock()
        self._lock = Lock()

    def try_acquire(self) -> float:
        """Take a token if available; otherwise return the seconds to wait."""

        with self._lock:
            now = self._clock()
            self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
            self._updated = now
            if self._tokens >= 1:
                self._tokens -= 1
                return 0.0
            return (1 - self._tokens) / self.rate

    def acquire(self, stop_event: Event) -> bool:
        while not stop_event.is_set():
            wait = self.try_acquire()
            if wait <= 0:
                return True
            if stop_event.wait(wait):
                break
        return False


__all__ = ["TokenBucket"]
