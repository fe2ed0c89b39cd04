"""Sliding-window request limiter for outbound API calls."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque


class RateLimiter:
    """Allow at most ``max_requests`` acquisitions in any ``window`` seconds.

    Timestamps of granted slots are kept in a deque; expired ones are evicted
    before every decision. Concurrent callers are serialized by a lock so the
    window can never be overfilled.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be positive")
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._sleep = sleep
        self._timestamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window:
            self._timestamps.popleft()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    return
                wait = self.window - (now - self._timestamps[0])
                await self._sleep(max(wait, 0.001))

    @property
    def in_window(self) -> int:
        """Slots currently counted against the window."""

        self._evict(self._clock())
        return len(self._timestamps)

    def snapshot(self) -> list[float]:
        return list(self._timestamps)


__all__ = ["RateLimiter"]
