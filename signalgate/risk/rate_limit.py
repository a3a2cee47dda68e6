"""Inbound request rate limiter."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable

from signalgate.config.settings import RateLimitConfig
from signalgate.errors import RateLimitExceeded


class RateLimiter:
    """Bound the total inbound rate, independent of symbol.

    ``fixed`` counts requests in consecutive windows of ``window_sec``;
    ``sliding`` keeps the timestamps of the last ``max_requests`` accepted
    requests.
    """

    def __init__(self, config: RateLimitConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config
        self.max_requests = config.max_requests
        self.window_sec = config.window_sec
        self.mode = config.mode
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: deque[float] = deque()
        self._window_start = clock()
        self._window_count = 0
        self._rejected = 0

    def try_acquire(self) -> float:
        """Return 0.0 when the request is admitted, else seconds until it would be."""
        now = self._clock()
        with self._lock:
            if self.mode == "fixed":
                if now - self._window_start >= self.window_sec:
                    self._window_start = now
                    self._window_count = 0
                if self._window_count < self.max_requests:
                    self._window_count += 1
                    return 0.0
                self._rejected += 1
                return max(0.0, self._window_start + self.window_sec - now)

            cutoff = now - self.window_sec
            while self._hits and self._hits[0] <= cutoff:
                self._hits.popleft()
            if len(self._hits) < self.max_requests:
                self._hits.append(now)
                return 0.0
            self._rejected += 1
            return max(0.0, self._hits[0] + self.window_sec - now)

    def acquire(self) -> None:
        """Admit the request or raise ``RateLimitExceeded``."""
        retry_after = self.try_acquire()
        if retry_after > 0:
            raise RateLimitExceeded(retry_after)

    def stats(self) -> dict[str, object]:
        now = self._clock()
        with self._lock:
            if self.mode == "fixed":
                in_window = self._window_count if now - self._window_start < self.window_sec else 0
            else:
                cutoff = now - self.window_sec
                in_window = sum(1 for t in self._hits if t > cutoff)
        return {
            "mode": self.mode,
            "max_requests": self.max_requests,
            "window_sec": self.window_sec,
            "in_window": in_window,
            "remaining": max(0, self.max_requests - in_window),
            "rejected_total": self._rejected,
        }
