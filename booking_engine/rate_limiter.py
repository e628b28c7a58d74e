"""
Sliding-window rate limiter for outbound Google Calendar traffic.

Calendar reads are not on a hard latency budget, so a caller over the limit
is suspended until the oldest request leaves the window instead of being
rejected.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 100.0,
        name: str = "calendar",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._requests: deque[float] = deque()
        # Waiters queue on the lock so they are released in arrival order
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self.window_seconds:
            self._requests.popleft()

    def wait_time(self) -> float:
        """Seconds a caller arriving now would have to wait"""
        now = self._clock()
        self._prune(now)
        if len(self._requests) < self.max_requests:
            return 0.0
        return max(0.0, self.window_seconds - (now - self._requests[0]))

    async def acquire(self) -> float:
        """Wait for a slot and record the request. Returns seconds spent waiting."""
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._requests) < self.max_requests:
                    self._requests.append(now)
                    return waited

                wait = self.window_seconds - (now - self._requests[0])
                logger.info(
                    f"⏳ Rate limit reached for {self.name} "
                    f"({self.max_requests}/{self.window_seconds:.0f}s) - waiting {wait:.2f}s"
                )
                await self._sleep(wait)
                waited += wait

    def snapshot(self) -> dict:
        now = self._clock()
        self._prune(now)
        return {
            "name": self.name,
            "maxRequests": self.max_requests,
            "windowSeconds": self.window_seconds,
            "inWindow": len(self._requests),
            "waitSeconds": self.wait_time(),
        }
