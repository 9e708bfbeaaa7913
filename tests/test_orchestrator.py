"""Tests for the per-query state machine."""

import asyncio
import os
import sys

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from conftest import unit
from semcache.core.config import TierSettings
from semcache.core.metrics import metrics
from semcache.core.retry import RetryPolicy
from semcache.domain.exceptions import (
    AuthenticationError,
    CacheConnectionError,
    EmbeddingError,
    MonthlyQuotaExceededError,
    NotFoundError,
    ProviderUnavailableError,
    RateLimitExceededError,
    ScopeError,
    ValidationError,
)
from semcache.domain.models import PartitionKey, QueryRequest, QueryState, Tier
from semcache.services.orchestrator import (
    CACHE_PROVIDER,
    QueryOrchestrator,
    QueryTrace,
    normalize_prompt,
)
from semcache.services.vector_index import VectorIndex

MODEL = "gpt-4o-mini"


def ask(prompt: str, **kwargs) -> QueryRequest:
    return QueryRequest(prompt=prompt, model=MODEL, **kwargs)


def make_orchestrator(services, **overrides) -> QueryOrchestrator:
    options = dict(
        key_store=services.key_store,
        rate_limiter=services.rate_limiter,
        quota=services.quota,
        embedder=services.embedder,
        index=services.index,
        store=services.store,
        gateway=services.gateway,
        persist_retry=RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=0.05),
    )
    options.update(overrides)
    return QueryOrchestrator(**options)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


class TestNormalizePrompt:
    def test_case_and_whitespace(self):
        assert normalize_prompt("  What   IS\tML? ") == "what is ml?"

    def test_compatibility_forms(self):
        assert normalize_prompt("ＭＬ") == normalize_prompt("ml")


class TestScenarios:
    @pytest.mark.anyio
    async def test_first_query_misses_and_is_cached(self, services):
        token, project, _ = await services.new_key()

        outcome = await services.orchestrator.handle(token, ask("What is ML?"))

        result = outcome.result
        assert result.cache_hit is False
        assert result.response == "answer to: What is ML?"
        assert result.similarity_score is None
        assert result.cost_saved == 0.0
        assert result.llm_provider == "openai"
        assert outcome.project_id == project.id
        assert await services.store.get_entry(result.entry_id) is not None
        assert services.index.contains(result.entry_id)

    @pytest.mark.anyio
    async def test_similar_query_hits(self, services):
        token, project, _ = await services.new_key()
        first = await services.orchestrator.handle(token, ask("What is ML?"))

        outcome = await services.orchestrator.handle(token, ask("What is machine learning?"))

        result = outcome.result
        assert result.cache_hit is True
        assert result.response == first.result.response
        assert result.similarity_score == pytest.approx(0.95, abs=1e-3)
        assert result.cost_saved > 0
        assert result.llm_provider == CACHE_PROVIDER
        assert len(services.provider.calls) == 1

        usage = await services.quota.get_usage(project.id)
        assert usage.total_queries == 2
        assert usage.cache_hits == 1
        assert usage.cache_misses == 1
        assert usage.cost_saved == pytest.approx(result.cost_saved)

    @pytest.mark.anyio
    async def test_context_isolates_entries(self, services):
        token, _, _ = await services.new_key()
        await services.orchestrator.handle(token, ask("What is ML?", context="billing"))

        outcome = await services.orchestrator.handle(token, ask("What is ML?", context="support"))

        assert outcome.result.cache_hit is False
        assert len(services.provider.calls) == 2

    @pytest.mark.anyio
    async def test_empty_context_shares_partition_with_no_context(self, services):
        token, _, _ = await services.new_key()
        await services.orchestrator.handle(token, ask("What is ML?", context=""))
        outcome = await services.orchestrator.handle(token, ask("What is ML?"))
        assert outcome.result.cache_hit is True

    @pytest.mark.anyio
    async def test_projects_never_share_entries(self, services):
        token_a, _, _ = await services.new_key(name="a")
        token_b, _, _ = await services.new_key(name="b")
        await services.orchestrator.handle(token_a, ask("What is ML?"))

        outcome = await services.orchestrator.handle(token_b, ask("What is ML?"))

        assert outcome.result.cache_hit is False

    @pytest.mark.anyio
    async def test_target_model_partitions(self, services):
        token, _, _ = await services.new_key()
        await services.orchestrator.handle(token, ask("What is ML?"))
        outcome = await services.orchestrator.handle(
            token, QueryRequest(prompt="What is ML?", model="gpt-4o")
        )
        assert outcome.result.cache_hit is False

    @pytest.mark.anyio
    async def test_threshold_is_inclusive(self, services):
        token, _, _ = await services.new_key()
        await services.orchestrator.handle(token, ask("What is ML?"))
        outcome = await services.orchestrator.handle(
            token, ask("What is ML?", similarity_threshold=1.0)
        )
        assert outcome.result.cache_hit is True
        assert outcome.result.similarity_score == 1.0

    @pytest.mark.anyio
    async def test_higher_threshold_misses(self, services):
        token, _, _ = await services.new_key()
        await services.orchestrator.handle(token, ask("What is ML?"))
        outcome = await services.orchestrator.handle(
            token, ask("What is machine learning?", similarity_threshold=0.99)
        )
        assert outcome.result.cache_hit is False

    @pytest.mark.anyio
    async def test_only_the_prompt_is_sent_to_the_provider(self, services):
        token, _, _ = await services.new_key()
        await services.orchestrator.handle(token, ask("What is ML?", context="billing"))
        _, messages, api_key = services.provider.calls[0]
        assert [(m.role.value, m.content) for m in messages] == [("user", "What is ML?")]
        assert api_key == "sk-service"

    @pytest.mark.anyio
    async def test_debug_block(self, services):
        token, _, _ = await services.new_key()
        await services.orchestrator.handle(token, ask("What is ML?"))

        outcome = await services.orchestrator.handle(token, ask("What is ML?", include_debug=True))

        debug = outcome.result.debug
        assert debug.matched_cache_entry_id == outcome.result.entry_id
        assert debug.cache_entry_count == 1
        assert debug.total_time_ms >= debug.embedding_time_ms

    @pytest.mark.anyio
    async def test_no_debug_unless_asked(self, services):
        token, _, _ = await services.new_key()
        outcome = await services.orchestrator.handle(token, ask("What is ML?"))
        assert outcome.result.debug is None


class TestTrace:
    @pytest.mark.anyio
    async def test_miss_path(self, services):
        token, _, _ = await services.new_key()
        outcome = await services.orchestrator.handle(token, ask("What is ML?"))
        assert outcome.trace.states == [
            QueryState.AUTHENTICATING,
            QueryState.RATE_LIMIT_CHECK,
            QueryState.QUOTA_CHECK,
            QueryState.EMBEDDING,
            QueryState.SEARCHING,
            QueryState.MISS,
            QueryState.INVOKING,
            QueryState.PERSISTING,
            QueryState.RESPOND,
        ]

    @pytest.mark.anyio
    async def test_hit_path(self, services):
        token, _, _ = await services.new_key()
        await services.orchestrator.handle(token, ask("What is ML?"))
        outcome = await services.orchestrator.handle(token, ask("What is ML?"))
        assert outcome.trace.states == [
            QueryState.AUTHENTICATING,
            QueryState.RATE_LIMIT_CHECK,
            QueryState.QUOTA_CHECK,
            QueryState.EMBEDDING,
            QueryState.SEARCHING,
            QueryState.HIT,
            QueryState.RESPOND,
        ]

    @pytest.mark.anyio
    async def test_failure_path(self, services):
        trace = QueryTrace()
        with pytest.raises(AuthenticationError):
            await services.orchestrator.handle("sc_live_bogus", ask("What is ML?"), trace=trace)
        assert trace.states == [QueryState.AUTHENTICATING, QueryState.FAILED]


class TestGates:
    @pytest.mark.anyio
    async def test_scope_mismatch(self, services):
        token, _, _ = await services.new_key()
        with pytest.raises(ScopeError):
            await services.orchestrator.handle(token, ask("What is ML?"), project_scope="other")

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "request_",
        [
            QueryRequest(prompt="   ", model=MODEL),
            QueryRequest(prompt="x" * 40_000, model=MODEL),
            QueryRequest(prompt="What is ML?", model="llama-3"),
            QueryRequest(prompt="What is ML?", model=MODEL, similarity_threshold=1.5),
            QueryRequest(prompt="What is ML?", model=MODEL, similarity_threshold=-0.1),
        ],
    )
    async def test_invalid_requests_consume_nothing(self, services, request_):
        token, project, key = await services.new_key()

        with pytest.raises(ValidationError):
            await services.orchestrator.handle(token, request_)

        assert await services.rate_limiter.get_remaining(key.key_id, 100) == 100
        assert (await services.quota.get_usage(project.id)).total_queries == 0
        assert services.embedder.calls == 0

    @pytest.mark.anyio
    async def test_rate_limit(self, services):
        token, project, _ = await services.new_key()
        orchestrator = make_orchestrator(services, tiers=TierSettings(free_rate_limit=2))
        await orchestrator.handle(token, ask("What is ML?"))
        await orchestrator.handle(token, ask("What is ML?"))

        with pytest.raises(RateLimitExceededError) as exc_info:
            await orchestrator.handle(token, ask("What is ML?"))

        assert exc_info.value.remaining == 0
        assert exc_info.value.retry_after >= 1
        assert (await services.quota.get_usage(project.id)).total_queries == 2
        assert metrics.get_metrics()["limits"]["rate_limit_rejections"] == 1

    @pytest.mark.anyio
    async def test_monthly_quota(self, services):
        token, project, key = await services.new_key()
        orchestrator = make_orchestrator(services, tiers=TierSettings(free_monthly_quota=1))
        await orchestrator.handle(token, ask("What is ML?"))

        with pytest.raises(MonthlyQuotaExceededError):
            await orchestrator.handle(token, ask("What is ML?"))

        assert services.embedder.calls == 1
        assert (await services.quota.get_usage(project.id)).total_queries == 1
        assert await services.rate_limiter.get_remaining(key.key_id, 100) == 99

    @pytest.mark.anyio
    async def test_enterprise_is_unlimited(self, services):
        token, _, _ = await services.new_key(tier=Tier.ENTERPRISE)
        orchestrator = make_orchestrator(services, tiers=TierSettings(enterprise_monthly_quota=0))
        for _ in range(3):
            await orchestrator.handle(token, ask("What is ML?"))


class TestFailures:
    @pytest.mark.anyio
    async def test_provider_error_creates_no_entry_and_releases_quota(self, services):
        token, project, _ = await services.new_key()
        services.provider.error = ProviderUnavailableError("upstream 503", "openai", 503)

        with pytest.raises(ProviderUnavailableError):
            await services.orchestrator.handle(token, ask("What is ML?"))

        assert await services.store.count_entries() == 0
        assert services.index.total == 0
        assert (await services.quota.get_usage(project.id)).total_queries == 0
        assert len(services.orchestrator.flights) == 0

    @pytest.mark.anyio
    async def test_provider_recovers_on_next_query(self, services):
        token, _, _ = await services.new_key()
        services.provider.error = ProviderUnavailableError("upstream 503", "openai", 503)
        with pytest.raises(ProviderUnavailableError):
            await services.orchestrator.handle(token, ask("What is ML?"))

        services.provider.error = None
        outcome = await services.orchestrator.handle(token, ask("What is ML?"))
        assert outcome.result.cache_hit is False
        assert outcome.result.entry_id is not None

    @pytest.mark.anyio
    async def test_embedding_failure(self, services):
        token, project, _ = await services.new_key()
        services.embedder.fail = True

        with pytest.raises(EmbeddingError) as exc_info:
            await services.orchestrator.handle(token, ask("What is ML?"))

        assert exc_info.value.status_code == 503
        assert services.provider.calls == []
        assert (await services.quota.get_usage(project.id)).total_queries == 0

    @pytest.mark.anyio
    async def test_persistence_failure_still_answers(self, services, monkeypatch):
        token, _, _ = await services.new_key()

        async def broken_put(entry):
            raise CacheConnectionError("redis down")

        monkeypatch.setattr(services.store, "put_entry", broken_put)

        outcome = await services.orchestrator.handle(token, ask("What is ML?"))
        await services.orchestrator.wait_background()

        assert outcome.result.response == "answer to: What is ML?"
        assert outcome.result.entry_id is None
        assert services.index.total == 0
        assert metrics.get_metrics()["cache"]["persistence_failures"] == 1

    @pytest.mark.anyio
    async def test_persistence_is_retried_in_background(self, services, monkeypatch):
        token, _, _ = await services.new_key()
        real_put = services.store.put_entry
        attempts = 0

        async def flaky_put(entry):
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise CacheConnectionError("redis blip")
            await real_put(entry)

        monkeypatch.setattr(services.store, "put_entry", flaky_put)

        await services.orchestrator.handle(token, ask("What is ML?"))
        await services.orchestrator.wait_background()

        assert attempts == 2
        assert services.index.total == 1
        outcome = await services.orchestrator.handle(token, ask("What is ML?"))
        assert outcome.result.cache_hit is True

    @pytest.mark.anyio
    async def test_index_failure_rolls_back_store_write(self, services, monkeypatch):
        token, _, _ = await services.new_key()

        def broken_add(*args, **kwargs):
            raise ValueError("dimension mismatch")

        monkeypatch.setattr(services.index, "add", broken_add)
        orchestrator = make_orchestrator(services, persist_retry=RetryPolicy(max_attempts=1))

        outcome = await orchestrator.handle(token, ask("What is ML?"))
        await orchestrator.wait_background()

        assert outcome.result.entry_id is None
        assert await services.store.count_entries() == 0

    @pytest.mark.anyio
    async def test_vanished_entry_becomes_a_miss(self, services):
        token, _, _ = await services.new_key()
        first = await services.orchestrator.handle(token, ask("What is ML?"))
        await services.store.delete_entry(first.result.entry_id)

        outcome = await services.orchestrator.handle(token, ask("What is ML?"))

        assert outcome.result.cache_hit is False
        assert not services.index.contains(first.result.entry_id)
        assert len(services.provider.calls) == 2

    @pytest.mark.anyio
    async def test_touch_failure_is_not_fatal(self, services, monkeypatch):
        token, _, _ = await services.new_key()
        await services.orchestrator.handle(token, ask("What is ML?"))

        async def broken_touch(entry_id, when=None):
            raise CacheConnectionError("redis down")

        monkeypatch.setattr(services.store, "touch_entry", broken_touch)
        outcome = await services.orchestrator.handle(token, ask("What is ML?"))
        assert outcome.result.cache_hit is True


class TestCoalescing:
    @pytest.mark.anyio
    async def test_concurrent_identical_misses_call_provider_once(self, services):
        token, project, _ = await services.new_key()
        services.provider.delay = 0.1

        outcomes = await asyncio.gather(
            *(services.orchestrator.handle(token, ask("What is ML?")) for _ in range(10))
        )

        assert len(services.provider.calls) == 1
        assert {o.result.response for o in outcomes} == {"answer to: What is ML?"}
        assert await services.store.count_entries() == 1
        assert sum(o.result.coalesced for o in outcomes) >= 1
        assert (await services.quota.get_usage(project.id)).total_queries == 10

    @pytest.mark.anyio
    async def test_normalised_prompts_share_a_flight(self, services):
        token, _, _ = await services.new_key()
        services.provider.delay = 0.1

        first, second = await asyncio.gather(
            services.orchestrator.handle(token, ask("What is ML?")),
            services.orchestrator.handle(token, ask("  what IS ml? ")),
        )

        assert len(services.provider.calls) == 1
        assert first.result.response == second.result.response

    @pytest.mark.anyio
    async def test_shared_failure_reaches_every_caller(self, services):
        token, project, _ = await services.new_key()
        services.provider.delay = 0.05
        services.provider.error = ProviderUnavailableError("upstream 503", "openai", 503)

        results = await asyncio.gather(
            *(services.orchestrator.handle(token, ask("What is ML?")) for _ in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, ProviderUnavailableError) for r in results)
        assert len(services.provider.calls) == 1
        assert (await services.quota.get_usage(project.id)).total_queries == 0

    @pytest.mark.anyio
    async def test_follower_with_stricter_threshold_is_not_served_a_weaker_hit(self, services):
        token, project, _ = await services.new_key()
        await services.orchestrator.handle(token, ask("What is machine learning?"))
        vector, tag = await services.embedder.embed("What is ML?")
        partition = PartitionKey.build(project.id, None, MODEL)

        def miss(threshold: float):
            request = ask("What is ML?", similarity_threshold=threshold)
            return services.orchestrator._serve_miss(
                project.id, partition, tag, vector, request, QueryTrace()
            )

        # Both skip the initial search and meet in one flight, which finds the entry
        loose, strict = await asyncio.gather(miss(0.9), miss(0.99))

        assert loose.cache_hit is True
        assert loose.similarity_score == pytest.approx(0.95, abs=1e-3)
        assert strict.cache_hit is False
        assert strict.response == "answer to: What is ML?"
        assert len(services.provider.calls) == 2

    @pytest.mark.anyio
    async def test_abandoned_caller_still_populates_cache(self, services):
        token, project, _ = await services.new_key()
        services.provider.delay = 0.1

        caller = asyncio.create_task(services.orchestrator.handle(token, ask("What is ML?")))
        while not services.provider.calls:
            await asyncio.sleep(0.005)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        assert (await services.quota.get_usage(project.id)).total_queries == 0
        while len(services.orchestrator.flights):
            await asyncio.sleep(0.01)
        assert await services.store.count_entries() == 1

        outcome = await services.orchestrator.handle(token, ask("What is ML?"))
        assert outcome.result.cache_hit is True
        assert len(services.provider.calls) == 1


class TestEntryManagement:
    @pytest.mark.anyio
    async def test_delete_entry(self, services):
        token, project, _ = await services.new_key()
        first = await services.orchestrator.handle(token, ask("What is ML?"))

        await services.orchestrator.delete_entry(project.id, first.result.entry_id)

        assert not services.index.contains(first.result.entry_id)
        outcome = await services.orchestrator.handle(token, ask("What is ML?"))
        assert outcome.result.cache_hit is False

    @pytest.mark.anyio
    async def test_delete_entry_of_another_project(self, services):
        token, _, _ = await services.new_key()
        first = await services.orchestrator.handle(token, ask("What is ML?"))
        with pytest.raises(NotFoundError):
            await services.orchestrator.delete_entry("someone-else", first.result.entry_id)
        assert services.index.contains(first.result.entry_id)

    @pytest.mark.anyio
    async def test_rebuild_index_from_store(self, services):
        token, _, _ = await services.new_key()
        await services.orchestrator.handle(token, ask("What is ML?"))
        services.embedder.set("Explain ML", unit(0.0, 1.0))
        await services.orchestrator.handle(token, ask("Explain ML"))

        fresh_index = VectorIndex(index_type="flat")
        restarted = make_orchestrator(services, index=fresh_index)

        assert await restarted.rebuild_index() == 2
        assert await restarted.rebuild_index() == 0
        outcome = await restarted.handle(token, ask("What is machine learning?"))
        assert outcome.result.cache_hit is True

    @pytest.mark.anyio
    async def test_entry_ttl(self, services):
        token, _, _ = await services.new_key()
        orchestrator = make_orchestrator(services, entry_ttl_seconds=3600)
        outcome = await orchestrator.handle(token, ask("What is ML?"))
        entry = await services.store.get_entry(outcome.result.entry_id)
        assert entry.expires_at is not None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
