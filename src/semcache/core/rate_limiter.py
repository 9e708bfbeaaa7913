"""Sliding-window request rate limiting per API key.

Check and record happen as one atomic step per key, and a rejected
request leaves no trace in the window.
"""

import asyncio
import logging
import math
import time
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass

import redis.asyncio as redis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    # Window member recorded for an allowed request; used to give the slot back
    member: str | None = None

    def retry_after(self, now: float | None = None) -> int:
        """Whole seconds until a slot frees up (at least 1 when rejected)."""
        wait = self.reset_at - (now if now is not None else time.time())
        if not self.allowed:
            return max(1, math.ceil(wait))
        return max(0, math.ceil(wait))

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }


class BaseRateLimiter(ABC):
    def __init__(self, window_seconds: int = 60, clock: Callable[[], float] = time.time):
        self.window_seconds = window_seconds
        self._clock = clock

    @abstractmethod
    async def acquire(self, identifier: str, limit: int) -> RateLimitResult:
        """Take a slot in the window if one is free."""
        ...

    @abstractmethod
    async def release(self, identifier: str, result: RateLimitResult) -> None:
        """Give back the slot taken by an allowed acquire."""
        ...

    @abstractmethod
    async def get_remaining(self, identifier: str, limit: int) -> int: ...


class InMemoryRateLimiter(BaseRateLimiter):
    """Per-process limiter. Each key has its own lock; there is no global one."""

    def __init__(self, window_seconds: int = 60, clock: Callable[[], float] = time.time):
        super().__init__(window_seconds, clock)
        self._windows: dict[str, deque[float]] = defaultdict(deque)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _prune(self, window: deque[float], now: float) -> None:
        window_start = now - self.window_seconds
        while window and window[0] <= window_start:
            window.popleft()

    async def acquire(self, identifier: str, limit: int) -> RateLimitResult:
        async with self._locks[identifier]:
            now = self._clock()
            window = self._windows[identifier]
            self._prune(window, now)
            if len(window) >= limit:
                return RateLimitResult(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    reset_at=window[0] + self.window_seconds,
                )
            window.append(now)
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=limit - len(window),
                reset_at=window[0] + self.window_seconds,
                member=repr(now),
            )

    async def release(self, identifier: str, result: RateLimitResult) -> None:
        if not result.allowed or result.member is None:
            return
        async with self._locks[identifier]:
            window = self._windows[identifier]
            stamp = float(result.member)
            if stamp in window:
                window.remove(stamp)

    async def get_remaining(self, identifier: str, limit: int) -> int:
        async with self._locks[identifier]:
            window = self._windows[identifier]
            self._prune(window, self._clock())
            return max(0, limit - len(window))


# KEYS[1] window zset; ARGV: now, window seconds, limit, unique member.
# Returns {allowed, count, oldest score as string}.
_ACQUIRE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    return {0, count, oldest[2] or ARGV[1]}
end
redis.call('ZADD', key, now, ARGV[4])
redis.call('EXPIRE', key, math.ceil(window))
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
return {1, count + 1, oldest[2] or ARGV[1]}
"""


class RateLimiter(BaseRateLimiter):
    """Redis sorted-set sliding window, atomic through a server-side script."""

    def __init__(
        self,
        client: redis.Redis,
        window_seconds: int = 60,
        prefix: str = "semcache",
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(window_seconds, clock)
        self.client = client
        self._prefix = prefix
        self._acquire = client.register_script(_ACQUIRE_SCRIPT)

    def _build_key(self, identifier: str) -> str:
        return f"{self._prefix}:rate:{identifier}"

    async def acquire(self, identifier: str, limit: int) -> RateLimitResult:
        now = self._clock()
        member = f"{now}:{uuid.uuid4().hex}"
        try:
            allowed, count, oldest = await self._acquire(
                keys=[self._build_key(identifier)],
                args=[repr(now), self.window_seconds, limit, member],
            )
        except redis.RedisError as e:
            # Fail open: the limiter protects cost, it must not take the service down
            logger.error("Error checking rate limit for %s: %s", identifier, e)
            return RateLimitResult(
                allowed=True, limit=limit, remaining=limit, reset_at=now + self.window_seconds
            )
        count = int(count)
        reset_at = float(oldest) + self.window_seconds
        if not int(allowed):
            return RateLimitResult(allowed=False, limit=limit, remaining=0, reset_at=reset_at)
        return RateLimitResult(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=reset_at,
            member=member,
        )

    async def release(self, identifier: str, result: RateLimitResult) -> None:
        if not result.allowed or result.member is None:
            return
        try:
            await self.client.zrem(self._build_key(identifier), result.member)
        except redis.RedisError as e:
            logger.error("Error releasing rate limit slot for %s: %s", identifier, e)

    async def get_remaining(self, identifier: str, limit: int) -> int:
        try:
            key = self._build_key(identifier)
            now = self._clock()
            count = await self.client.zcount(key, now - self.window_seconds, now)
            return max(0, limit - count)
        except redis.RedisError as e:
            logger.error("Error getting remaining requests for %s: %s", identifier, e)
            return limit
