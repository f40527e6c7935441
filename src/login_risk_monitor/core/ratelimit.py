"""Rolling-window request budgets for quota-bound upstream services."""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)


class RateLimiter(Protocol):
    """Non-blocking request budget."""

    async def try_acquire(self) -> bool: ...


class SlidingWindowRateLimiter:
    """
    Allow at most ``limit`` acquisitions in any rolling window.

    Counters are process-local. Several instances of the service each get
    their own budget, so the effective upstream quota scales with the
    number of instances.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the rate limiter.

        Args:
            limit: Maximum number of requests inside the window
            window_seconds: Length of the rolling window
            clock: Monotonic time source, in seconds
        """
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def try_acquire(self) -> bool:
        """
        Record one request if the budget allows it.

        Returns:
            True if the request may proceed, False if the budget is exhausted
        """
        async with self._lock:
            now = self._clock()
            self._cleanup_old_requests(now)

            if len(self._requests) >= self.limit:
                logger.debug(
                    "Rate limit reached (%d requests in %ss)",
                    len(self._requests),
                    self.window_seconds,
                )
                return False

            self._requests.append(now)
            return True

    @property
    def in_window(self) -> int:
        """Number of requests recorded in the current window."""
        self._cleanup_old_requests(self._clock())
        return len(self._requests)

    def _cleanup_old_requests(self, now: float):
        """Drop requests that fell out of the window."""
        cutoff = now - self.window_seconds
        while self._requests and self._requests[0] <= cutoff:
            self._requests.popleft()
