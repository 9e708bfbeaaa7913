"""Tests for monthly usage counters and quota enforcement."""

import os
import sys
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as redis

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from semcache.core.quota import (
    InMemoryQuotaTracker,
    RedisQuotaTracker,
    current_period,
    next_period_start,
    seconds_until_next_period,
)
from semcache.domain.exceptions import MonthlyQuotaExceededError


class TestPeriods:
    def test_current_period_format(self):
        assert current_period(datetime(2026, 3, 9, tzinfo=UTC)) == "2026-03"

    def test_december_rolls_over(self):
        assert next_period_start(datetime(2026, 12, 31, 23, tzinfo=UTC)) == datetime(2027, 1, 1, tzinfo=UTC)

    def test_seconds_until_next_period(self):
        assert seconds_until_next_period(datetime(2026, 1, 31, 23, 59, 30, tzinfo=UTC)) == 30


class TestInMemoryQuotaTracker:
    @pytest.mark.anyio
    async def test_reserve_counts_until_limit(self):
        quota = InMemoryQuotaTracker()
        assert await quota.reserve("p1", 2) == 1
        assert await quota.reserve("p1", 2) == 2

        with pytest.raises(MonthlyQuotaExceededError) as exc_info:
            await quota.reserve("p1", 2)

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after >= 1
        assert (await quota.get_usage("p1")).total_queries == 2

    @pytest.mark.anyio
    async def test_zero_limit_is_unlimited(self):
        quota = InMemoryQuotaTracker()
        for _ in range(50):
            await quota.reserve("p1", 0)
        assert (await quota.get_usage("p1")).total_queries == 50

    @pytest.mark.anyio
    async def test_release_undoes_reservation(self):
        quota = InMemoryQuotaTracker()
        await quota.reserve("p1", 1)
        await quota.release("p1")
        assert await quota.reserve("p1", 1) == 1

    @pytest.mark.anyio
    async def test_release_never_goes_negative(self):
        quota = InMemoryQuotaTracker()
        await quota.release("p1")
        assert (await quota.get_usage("p1")).total_queries == 0

    @pytest.mark.anyio
    async def test_record_outcome(self):
        quota = InMemoryQuotaTracker()
        await quota.record_outcome("p1", hit=True, cost_saved=0.002)
        await quota.record_outcome("p1", hit=True, cost_saved=0.003)
        await quota.record_outcome("p1", hit=False, cost_saved=0.0)

        usage = await quota.get_usage("p1")
        assert usage.cache_hits == 2
        assert usage.cache_misses == 1
        assert usage.cost_saved == pytest.approx(0.005)

    @pytest.mark.anyio
    async def test_periods_are_separate(self):
        quota = InMemoryQuotaTracker()
        await quota.record_outcome("p1", hit=False, cost_saved=0.0, period="2025-01")
        assert (await quota.get_usage("p1", "2025-01")).cache_misses == 1
        assert (await quota.get_usage("p1", "2025-02")).cache_misses == 0


class TestRedisQuotaTracker:
    def _tracker(self, reserve: AsyncMock, release: AsyncMock | None = None) -> RedisQuotaTracker:
        client = MagicMock()
        client.register_script.side_effect = [reserve, release or AsyncMock(return_value=0)]
        return RedisQuotaTracker(client, prefix="t")

    @pytest.mark.anyio
    async def test_reserve_returns_count(self):
        reserve = AsyncMock(return_value=[1, 7])
        assert await self._tracker(reserve).reserve("p1", 10) == 7
        assert reserve.await_args.kwargs["keys"] == [f"t:usage:p1:{current_period()}"]

    @pytest.mark.anyio
    async def test_reserve_over_limit_raises(self):
        reserve = AsyncMock(return_value=[0, 10])
        with pytest.raises(MonthlyQuotaExceededError):
            await self._tracker(reserve).reserve("p1", 10)

    @pytest.mark.anyio
    async def test_reserve_fails_open(self):
        reserve = AsyncMock(side_effect=redis.ConnectionError("down"))
        assert await self._tracker(reserve).reserve("p1", 10) == 0

    @pytest.mark.anyio
    async def test_get_usage_parses_hash(self):
        client = MagicMock()
        client.register_script.return_value = AsyncMock()
        client.hgetall = AsyncMock(
            return_value={"total_queries": "5", "cache_hits": "3", "cache_misses": "2", "cost_saved": "0.01"}
        )
        usage = await RedisQuotaTracker(client).get_usage("p1", "2026-01")
        assert usage.total_queries == 5
        assert usage.cache_hits == 3
        assert usage.cost_saved == pytest.approx(0.01)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
