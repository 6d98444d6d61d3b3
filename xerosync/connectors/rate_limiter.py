"""
Sliding-window rate limiter for outbound Xero API calls.

Xero enforces a per-tenant minute quota, so the limiter is keyed by tenant
(optionally ``tenant:endpoint-class``). One instance is created per process
and passed to every fetcher; it keeps no module-level state.
"""

import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Optional

import structlog

from xerosync.errors import RateLimitExceeded

logger = structlog.get_logger()


class RateLimiter:
    """
    Grants at most ``max_requests`` per ``window_seconds`` for each key.

    Attributes:
        max_requests: Requests allowed inside one window
        window_seconds: Length of the sliding window
        max_wait_seconds: Longest ``acquire`` will sleep for a free slot
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_seconds: float = 60.0,
        max_wait_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_wait_seconds = max_wait_seconds
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._windows: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()

    def _prune(self, window: deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()

    async def try_acquire(self, key: str) -> float:
        """
        Take a slot if one is free.

        Returns:
            0.0 when the slot was granted, otherwise the seconds until the
            oldest request leaves the window
        """
        async with self._lock:
            now = self._clock()
            window = self._windows.setdefault(key, deque())
            self._prune(window, now)

            if len(window) < self.max_requests:
                window.append(now)
                return 0.0

            return max(window[0] + self.window_seconds - now, 0.0)

    async def acquire(self, key: str) -> None:
        """
        Take a slot, sleeping while the wait stays within ``max_wait_seconds``.

        Raises:
            RateLimitExceeded: If the next free slot is further away than the
                maximum wait
        """
        while True:
            wait = await self.try_acquire(key)
            if wait == 0.0:
                return

            if wait > self.max_wait_seconds:
                logger.warning("rate_limit_exceeded", key=key, retry_after=round(wait, 3))
                raise RateLimitExceeded(
                    f"Rate limit reached for {key}; retry in {wait:.1f}s",
                    retry_after=wait,
                )

            logger.debug("rate_limit_throttling", key=key, sleep_seconds=round(wait, 3))
            await self._sleep(wait)

    async def reset(self, key: str) -> None:
        """Forget all recorded requests for a key."""
        async with self._lock:
            self._windows.pop(key, None)

    def usage(self, key: str) -> int:
        """Requests currently recorded for a key (pruned on the next acquire)."""
        window = self._windows.get(key)
        if not window:
            return 0
        now = self._clock()
        return sum(1 for t in window if t > now - self.window_seconds)
