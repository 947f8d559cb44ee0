"""In-memory sliding-window limiter for failed credential attempts.

State is per process and lost on restart.
"""

from __future__ import annotations

import time
from collections import deque


class InMemoryRateLimiter:
    """Allow at most ``limit`` failures per key within ``window_seconds``.

    Safe under asyncio's single-threaded model: no method awaits between
    reading and mutating the attempt log.
    """

    def __init__(self, limit: int, window_seconds: int) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._failures: dict[str, deque[float]] = {}

    def _live(self, key: str, now: float) -> deque[float] | None:
        failures = self._failures.get(key)
        if failures is None:
            return None
        cutoff = now - self.window_seconds
        while failures and failures[0] <= cutoff:
            failures.popleft()
        if not failures:
            del self._failures[key]
            return None
        return failures

    def retry_after(self, key: str) -> int:
        """Seconds until ``key`` may try again; 0 when it is not limited."""
        now = time.monotonic()
        failures = self._live(key, now)
        if failures is None or len(failures) < self.limit:
            return 0
        return max(int(failures[0] + self.window_seconds - now) + 1, 1)

    def add_failure(self, key: str) -> None:
        now = time.monotonic()
        failures = self._live(key, now)
        if failures is None:
            failures = self._failures[key] = deque()
        failures.append(now)

    def clear(self, key: str) -> None:
        self._failures.pop(key, None)
