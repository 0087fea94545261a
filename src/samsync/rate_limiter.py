"""Per-credential request budgets for the SAM.gov API."""

import asyncio
import hashlib
import logging
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


def key_fingerprint(api_key: str) -> str:
    """Short, non-reversible identifier for an API key."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]


class TokenBucket:
    """Allows at most ``capacity`` grants in any rolling ``window``.

    The bucket remembers when each grant inside the current window was
    made; a token frees up when the oldest grant ages out.
    """

    def __init__(self, capacity: int, window: float, clock: Clock) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if window <= 0:
            raise ValueError("window must be positive")
        self.capacity = capacity
        self.window = window
        self._clock = clock
        self._grants: Deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._grants and now - self._grants[0] >= self.window:
            self._grants.popleft()

    @property
    def tokens(self) -> int:
        self._prune(self._clock())
        return self.capacity - len(self._grants)

    @property
    def reset_at(self) -> float:
        """Clock time at which the next token becomes available."""
        now = self._clock()
        self._prune(now)
        if len(self._grants) < self.capacity:
            return now
        return self._grants[0] + self.window

    def try_consume(self) -> bool:
        now = self._clock()
        self._prune(now)
        if len(self._grants) >= self.capacity:
            return False
        self._grants.append(now)
        return True

    def force_consume(self) -> None:
        self._grants.append(self._clock())


class RateLimiter:
    """Holds one TokenBucket per API key.

    Usage:
        limiter = RateLimiter(requests_per_window=60, window_seconds=60)
        await limiter.acquire(api_key)
    """

    def __init__(
        self,
        requests_per_window: int,
        window_seconds: float = 60.0,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._buckets: Dict[str, TokenBucket] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def bucket_for(self, api_key: str) -> TokenBucket:
        fingerprint = key_fingerprint(api_key)
        bucket = self._buckets.get(fingerprint)
        if bucket is None:
            bucket = TokenBucket(
                self.requests_per_window, self.window_seconds, self._clock
            )
            self._buckets[fingerprint] = bucket
        return bucket

    def _lock_for(self, api_key: str) -> asyncio.Lock:
        fingerprint = key_fingerprint(api_key)
        lock = self._locks.get(fingerprint)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[fingerprint] = lock
        return lock

    async def acquire(self, api_key: str) -> None:
        """Consume one token for ``api_key``, waiting for the window if needed.

        This never raises for an empty bucket: it waits until the bucket's
        reset time, tries once more and then proceeds regardless. Callers
        on the same key queue behind the wait; other keys are unaffected.
        """
        async with self._lock_for(api_key):
            bucket = self.bucket_for(api_key)
            if bucket.try_consume():
                return

            wait_time = max(0.0, bucket.reset_at - self._clock())
            logger.warning(
                f"Rate limit budget for key {key_fingerprint(api_key)[:8]} "
                f"exhausted, waiting {wait_time:.2f}s"
            )
            await self._sleep(wait_time)

            if not bucket.try_consume():
                logger.warning(
                    "Rate limit bucket still empty after waiting; proceeding"
                )
                bucket.force_consume()

    def status(self, api_key: str) -> Dict[str, object]:
        """Remaining budget and reset time for ``api_key``."""
        bucket = self.bucket_for(api_key)
        seconds_to_reset = max(0.0, bucket.reset_at - self._clock())
        return {
            "remaining_requests": bucket.tokens,
            "reset_time": datetime.now(timezone.utc)
            + timedelta(seconds=seconds_to_reset),
            "requests_per_window": self.requests_per_window,
        }
