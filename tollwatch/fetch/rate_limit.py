"""Sliding-window rate limiter per caller."""
import asyncio
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict

from tollwatch.config import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: float = 0.0


class SlidingWindowRateLimiter:
    """Rate limiter that tracks requests per identifier (tenant id)."""

    def __init__(
        self,
        max_requests: int = config.SEARCH_RATE_LIMIT,
        window_seconds: float = config.SEARCH_RATE_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def check(self, identifier: str) -> RateLimitDecision:
        """Record a request if the window has room."""
        async with self._locks[identifier]:
            now = self.clock()
            hits = self._hits[identifier]
            while hits and now - hits[0] >= self.window_seconds:
                hits.popleft()

            if len(hits) >= self.max_requests:
                retry_after = self.window_seconds - (now - hits[0])
                logger.warning(f"Rate limit exceeded for {identifier}, retry in {retry_after:.0f}s")
                return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

            hits.append(now)
            return RateLimitDecision(allowed=True, remaining=self.max_requests - len(hits))

    def reset(self, identifier: str) -> None:
        self._hits.pop(identifier, None)
