"""Sliding-window request limiter."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

logger = logging.getLogger(__name__)


class SlidingWindowLimiter:
    """Allow at most ``max_requests`` starts in any ``window_seconds`` span.

    ``acquire`` waits when the window is full; it delays callers but never
    reorders them. ``clock`` and ``sleep`` can be replaced for tests.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._issued: Deque[float] = deque()
        self._lock = asyncio.Lock()
        self.total_wait = 0.0

    def _evict(self, now: float) -> None:
        while self._issued and now - self._issued[0] >= self.window_seconds:
            self._issued.popleft()

    async def acquire(self) -> float:
        """Reserve one request slot and return how long the caller waited."""
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._issued) < self.max_requests:
                    self._issued.append(now)
                    self.total_wait += waited
                    return waited
                delay = self._issued[0] + self.window_seconds - now
                logger.info(
                    f"Rate limit reached ({self.max_requests} requests per "
                    f"{self.window_seconds:.0f}s). Waiting {delay:.1f}s"
                )
                await self._sleep(delay)
                waited += delay
