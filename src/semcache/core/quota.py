"""Monthly per-project usage counters and quota enforcement.

Counters are keyed by calendar month (UTC), so a new period starts at zero
without a reset job. Every accepted query counts toward the quota, hit or
miss; hits are reported separately for billing.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import UTC, datetime

import redis.asyncio as redis

from semcache.domain.exceptions import MonthlyQuotaExceededError
from semcache.domain.models import UsageRecord

logger = logging.getLogger(__name__)

# Usage history kept in Redis for roughly 13 months
_USAGE_TTL_SECONDS = 400 * 24 * 3600


def current_period(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return f"{now.year:04d}-{now.month:02d}"


def next_period_start(now: datetime | None = None) -> datetime:
    now = now or datetime.now(UTC)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=UTC)
    return datetime(now.year, now.month + 1, 1, tzinfo=UTC)


def seconds_until_next_period(now: datetime | None = None) -> int:
    now = now or datetime.now(UTC)
    return max(1, math.ceil((next_period_start(now) - now).total_seconds()))


class QuotaTracker(ABC):
    """A limit of 0 means unlimited."""

    @abstractmethod
    async def reserve(self, project_id: str, limit: int) -> int:
        """Count one query if under the limit; otherwise raise without changing anything."""
        ...

    @abstractmethod
    async def release(self, project_id: str, period: str | None = None) -> None:
        """Undo a reservation for a query that failed after the quota check."""
        ...

    @abstractmethod
    async def record_outcome(
        self, project_id: str, hit: bool, cost_saved: float, period: str | None = None
    ) -> None: ...

    @abstractmethod
    async def get_usage(self, project_id: str, period: str | None = None) -> UsageRecord: ...


class InMemoryQuotaTracker(QuotaTracker):
    def __init__(self) -> None:
        self._records: dict[tuple[str, str], UsageRecord] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _record(self, project_id: str, period: str) -> UsageRecord:
        key = (project_id, period)
        if key not in self._records:
            self._records[key] = UsageRecord(project_id=project_id, period=period)
        return self._records[key]

    async def reserve(self, project_id: str, limit: int) -> int:
        async with self._locks[project_id]:
            record = self._record(project_id, current_period())
            if limit > 0 and record.total_queries >= limit:
                raise MonthlyQuotaExceededError(
                    record.total_queries, limit, retry_after=seconds_until_next_period()
                )
            record.total_queries += 1
            return record.total_queries

    async def release(self, project_id: str, period: str | None = None) -> None:
        async with self._locks[project_id]:
            record = self._record(project_id, period or current_period())
            record.total_queries = max(0, record.total_queries - 1)

    async def record_outcome(
        self, project_id: str, hit: bool, cost_saved: float, period: str | None = None
    ) -> None:
        async with self._locks[project_id]:
            record = self._record(project_id, period or current_period())
            if hit:
                record.cache_hits += 1
                record.cost_saved += cost_saved
            else:
                record.cache_misses += 1

    async def get_usage(self, project_id: str, period: str | None = None) -> UsageRecord:
        async with self._locks[project_id]:
            record = self._record(project_id, period or current_period())
            return UsageRecord(**vars(record))


_RESERVE_SCRIPT = """
local count = tonumber(redis.call('HGET', KEYS[1], 'total_queries') or '0')
local limit = tonumber(ARGV[1])
if limit > 0 and count >= limit then
    return {0, count}
end
count = redis.call('HINCRBY', KEYS[1], 'total_queries', 1)
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
return {1, count}
"""

_RELEASE_SCRIPT = """
local count = tonumber(redis.call('HGET', KEYS[1], 'total_queries') or '0')
if count > 0 then
    return redis.call('HINCRBY', KEYS[1], 'total_queries', -1)
end
return 0
"""


class RedisQuotaTracker(QuotaTracker):
    """Usage hash per project and month. Reservation is one atomic script call."""

    def __init__(self, client: redis.Redis, prefix: str = "semcache"):
        self.client = client
        self._prefix = prefix
        self._reserve = client.register_script(_RESERVE_SCRIPT)
        self._release = client.register_script(_RELEASE_SCRIPT)

    def _build_key(self, project_id: str, period: str) -> str:
        return f"{self._prefix}:usage:{project_id}:{period}"

    async def reserve(self, project_id: str, limit: int) -> int:
        key = self._build_key(project_id, current_period())
        try:
            allowed, count = await self._reserve(keys=[key], args=[limit, _USAGE_TTL_SECONDS])
        except redis.RedisError as e:
            logger.error("Error reserving quota for project %s: %s", project_id, e)
            return 0
        if not int(allowed):
            raise MonthlyQuotaExceededError(
                int(count), limit, retry_after=seconds_until_next_period()
            )
        return int(count)

    async def release(self, project_id: str, period: str | None = None) -> None:
        key = self._build_key(project_id, period or current_period())
        try:
            await self._release(keys=[key])
        except redis.RedisError as e:
            logger.error("Error releasing quota for project %s: %s", project_id, e)

    async def record_outcome(
        self, project_id: str, hit: bool, cost_saved: float, period: str | None = None
    ) -> None:
        key = self._build_key(project_id, period or current_period())
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                if hit:
                    pipe.hincrby(key, "cache_hits", 1)
                    pipe.hincrbyfloat(key, "cost_saved", cost_saved)
                else:
                    pipe.hincrby(key, "cache_misses", 1)
                pipe.expire(key, _USAGE_TTL_SECONDS)
                await pipe.execute()
        except redis.RedisError as e:
            logger.error("Error recording usage for project %s: %s", project_id, e)

    async def get_usage(self, project_id: str, period: str | None = None) -> UsageRecord:
        period = period or current_period()
        record = await self.client.hgetall(self._build_key(project_id, period))
        return UsageRecord(
            project_id=project_id,
            period=period,
            total_queries=int(record.get("total_queries", 0)),
            cache_hits=int(record.get("cache_hits", 0)),
            cache_misses=int(record.get("cache_misses", 0)),
            cost_saved=float(record.get("cost_saved", 0.0)),
        )
