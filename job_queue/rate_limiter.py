"""
Fixed-window admission limiter shared by every worker of a category.

Each key gets `limit` tokens per window; the bucket is refilled at the
window boundary. The (limit+1)-th admission in a window waits for the next
one. Callers that need atomicity (the in-memory queue) hold their own lock
around `reserve`; the Redis queue does the same INCR-per-window inside its
take script.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Callable

from core.errors import RateLimitExceeded
from models.schemas import utcnow


class FixedWindowRateLimiter:
    """Token bucket refilled to `limit` at each `window_seconds` boundary."""

    def __init__(
        self,
        limit: int = 12,
        window_seconds: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        if limit <= 0:
            raise ValueError("limit must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, tuple[int, int]] = {}   # key → (window_id, used)

    def window_id(self, now: datetime = None) -> int:
        ts = (now or self._clock()).timestamp()
        return int(math.floor(ts / self.window_seconds))

    def remaining(self, key: str, now: datetime = None) -> int:
        window = self.window_id(now)
        current, used = self._windows.get(key, (window, 0))
        if current != window:
            used = 0
        return self.limit - used

    def retry_after(self, now: datetime = None) -> float:
        ts = (now or self._clock()).timestamp()
        next_boundary = (math.floor(ts / self.window_seconds) + 1) * self.window_seconds
        return max(0.0, next_boundary - ts)

    def reserve(self, key: str, requested: int, now: datetime = None) -> int:
        """
        Take up to `requested` tokens from the current window and return how many
        were granted. Raises RateLimitExceeded when the window has none left.
        """
        now = now or self._clock()
        window = self.window_id(now)
        current, used = self._windows.get(key, (window, 0))
        if current != window:
            used = 0
        available = self.limit - used
        if available <= 0:
            raise RateLimitExceeded(key, self.retry_after(now))
        granted = min(requested, available)
        self._windows[key] = (window, used + granted)
        return granted
