"""Fixed-window request rate limiting.

Callers are identified by a hash of their API key (or their client IP when
authentication is disabled), so raw keys never reach Redis.
"""

import hashlib
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)


def hash_identity(identity: str) -> str:
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()[:32]


@dataclass
class RateLimitResult:
    """Outcome of counting one request against the caller's window."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    window_seconds: int

    @property
    def retry_after(self) -> int:
        return max(1, math.ceil(self.reset_at - time.time()))

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": datetime.fromtimestamp(
                self.reset_at, tz=timezone.utc
            ).isoformat(),
            "X-RateLimit-Period": f"{self.window_seconds}s",
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter(ABC):
    """Counts requests per caller in fixed windows of ``window_seconds``."""

    def __init__(self, limit: int, window_seconds: int):
        self.limit = limit
        self.window_seconds = window_seconds

    @abstractmethod
    async def _increment(self, key: str, window_start: int) -> int:
        """Count one request and return the window's new total."""

    async def hit(self, identity: str, now: Optional[float] = None) -> RateLimitResult:
        now = time.time() if now is None else now
        window_start = int(now // self.window_seconds) * self.window_seconds
        count = await self._increment(hash_identity(identity), window_start)
        return RateLimitResult(
            allowed=count <= self.limit,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_at=float(window_start + self.window_seconds),
            window_seconds=self.window_seconds,
        )


class InMemoryRateLimiter(RateLimiter):
    """Per-process counters; windows are dropped once they have passed."""

    def __init__(self, limit: int, window_seconds: int):
        super().__init__(limit, window_seconds)
        self._counts: Dict[Tuple[str, int], int] = {}

    async def _increment(self, key: str, window_start: int) -> int:
        expired = [k for k in self._counts if k[1] < window_start]
        for k in expired:
            del self._counts[k]
        count = self._counts.get((key, window_start), 0) + 1
        self._counts[(key, window_start)] = count
        return count


class RedisRateLimiter(RateLimiter):
    """Counters shared by every orchestrator instance.

    Each window is one ``INCR``-ed key that expires shortly after the window
    closes.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        limit: int,
        window_seconds: int,
        key_prefix: str = "ide",
    ):
        super().__init__(limit, window_seconds)
        self._redis = redis_client
        self._prefix = f"{key_prefix}:ratelimit"

    async def _increment(self, key: str, window_start: int) -> int:
        redis_key = f"{self._prefix}:{key}:{window_start}"
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(redis_key)
            pipe.expire(redis_key, self.window_seconds + 1)
            count, _ = await pipe.execute()
        return int(count)
