# src/resilience/rate_limiter.py — v2
"""Sliding-window rate limiter for a single external API client.

Shared by every in-flight scan that uses the client, so all state
changes happen under a lock.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable


class RateLimiter:
    """Allow at most `max_requests` within any `window_s` seconds."""

    def __init__(
        self,
        max_requests: int = 100,
        window_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_s <= 0:
            raise ValueError("window_s must be > 0")
        self._max_requests = max_requests
        self._window_s = window_s
        self._clock = clock
        self._timestamps: deque[float] = deque()
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self._window_s:
            self._timestamps.popleft()

    def can_make_request(self) -> bool:
        with self._lock:
            self._purge(self._clock())
            return len(self._timestamps) < self._max_requests

    def record_request(self) -> None:
        with self._lock:
            now = self._clock()
            self._purge(now)
            self._timestamps.append(now)

    def try_acquire(self) -> float | None:
        """Check and record in one step.

        Returns the recorded timestamp, or None when the window is full.
        """
        with self._lock:
            now = self._clock()
            self._purge(now)
            if len(self._timestamps) >= self._max_requests:
                return None
            self._timestamps.append(now)
            return now

    def release(self, stamp: float) -> None:
        """Give back a slot taken by try_acquire for a request never sent."""
        with self._lock:
            if stamp in self._timestamps:
                self._timestamps.remove(stamp)

    def get_wait_time(self) -> float:
        """Seconds until the oldest recorded request leaves the window."""
        with self._lock:
            now = self._clock()
            self._purge(now)
            if not self._timestamps:
                return 0.0
            return max(0.0, self._window_s - (now - self._timestamps[0]))

    @property
    def in_window(self) -> int:
        with self._lock:
            self._purge(self._clock())
            return len(self._timestamps)
