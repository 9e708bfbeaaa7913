"""
Per-query state machine.

    AUTHENTICATING -> RATE_LIMIT_CHECK -> QUOTA_CHECK -> EMBEDDING -> SEARCHING
        -> HIT -> RESPOND
        -> MISS -> INVOKING -> PERSISTING -> RESPOND

FAILED is reachable from every state. Both usage gates run before any
embedding work, and a quota reservation is released when the query fails
after it was taken.

On a miss, concurrent queries for the same partition, embedding model and
normalised prompt share one provider call through SingleFlight. The flight
persists the entry (store first, then index) before it leaves the flight
table, so any later query for that key finds the entry by search.
"""

import asyncio
import logging
import time
import unicodedata
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import numpy as np

from semcache.core.config import TierSettings
from semcache.core.context import set_project_id
from semcache.core.metrics import metrics, semcache_metrics
from semcache.core.quota import QuotaTracker, current_period
from semcache.core.rate_limiter import BaseRateLimiter, RateLimitResult
from semcache.core.retry import RetryPolicy
from semcache.core.singleflight import SingleFlight
from semcache.core.telemetry import log_persistence_failed, log_query_completed, log_query_failed
from semcache.domain.exceptions import (
    CacheError,
    MonthlyQuotaExceededError,
    NotFoundError,
    RateLimitExceededError,
    ScopeError,
    ValidationError,
)
from semcache.domain.models import (
    APIKey,
    CacheEntry,
    Completion,
    Message,
    PartitionKey,
    Project,
    QueryDebug,
    QueryRequest,
    QueryResult,
    QueryState,
    Role,
)
from semcache.providers.gateway import ProviderGateway
from semcache.services.auth import KeyStore
from semcache.services.cache_store import CacheStore
from semcache.services.cost_tracker import CostTracker
from semcache.services.decision import SCORE_DISPLAY_DIGITS, Decision, DecisionEngine
from semcache.services.embedding import Embedder
from semcache.services.vector_index import VectorIndex

logger = logging.getLogger(__name__)

CACHE_PROVIDER = "cache"


def normalize_prompt(prompt: str) -> str:
    """Coalescing key text: NFKC, case-folded, whitespace collapsed."""
    return " ".join(unicodedata.normalize("NFKC", prompt).casefold().split())


@dataclass
class QueryTrace:
    """States visited by one query, in order."""
    states: list[QueryState] = field(default_factory=lambda: [QueryState.AUTHENTICATING])

    @property
    def current(self) -> QueryState:
        return self.states[-1]

    def advance(self, state: QueryState) -> None:
        self.states.append(state)

    def fail(self) -> None:
        if self.current != QueryState.FAILED:
            self.states.append(QueryState.FAILED)


@dataclass(frozen=True)
class QueryOutcome:
    result: QueryResult
    rate_limit: RateLimitResult
    project_id: str
    trace: QueryTrace


@dataclass(frozen=True)
class _FlightResult:
    text: str
    provider: str
    entry_id: str | None
    # Set when the flight found an entry persisted by a flight that just finished
    cached_entry: CacheEntry | None = None
    score: float | None = None


class QueryOrchestrator:
    def __init__(
        self,
        key_store: KeyStore,
        rate_limiter: BaseRateLimiter,
        quota: QuotaTracker,
        embedder: Embedder,
        index: VectorIndex,
        store: CacheStore,
        gateway: ProviderGateway,
        decision: DecisionEngine | None = None,
        cost_tracker: CostTracker | None = None,
        tiers: TierSettings | None = None,
        entry_ttl_seconds: int | None = None,
        max_prompt_chars: int = 32_000,
        persist_retry: RetryPolicy | None = None,
    ):
        self._key_store = key_store
        self._rate_limiter = rate_limiter
        self._quota = quota
        self._embedder = embedder
        self._index = index
        self._store = store
        self._gateway = gateway
        self._decision = decision or DecisionEngine()
        self._cost_tracker = cost_tracker or CostTracker()
        self._tiers = tiers or TierSettings()
        self._entry_ttl = entry_ttl_seconds
        self._max_prompt_chars = max_prompt_chars
        self._persist_retry = persist_retry or RetryPolicy()
        self._flights = SingleFlight()
        self._background: set[asyncio.Task] = set()

    @property
    def flights(self) -> SingleFlight:
        return self._flights

    async def authorize(
        self, token: str, project_scope: str | None = None
    ) -> tuple[APIKey, Project]:
        """Authenticate the key and check it belongs to project_scope, when given."""
        key, project = await self._key_store.authenticate(token)
        set_project_id(project.id)
        if project_scope is not None and project_scope != project.id:
            raise ScopeError("API key does not belong to the requested project")
        return key, project

    async def handle(
        self,
        token: str,
        request: QueryRequest,
        project_scope: str | None = None,
        trace: QueryTrace | None = None,
        principal: tuple[APIKey, Project] | None = None,
    ) -> QueryOutcome:
        """Run one query through the state machine.

        Raises a SemCacheError subclass on any terminal failure. The caller's
        deadline is enforced outside; cancellation releases the quota
        reservation but never cancels a shared provider call. A caller that
        already ran authorize() passes its result as principal.
        """
        trace = trace or QueryTrace()
        start = time.perf_counter()
        project_id: str | None = None
        reserved_period: str | None = None
        try:
            key, project = principal or await self.authorize(token, project_scope)
            project_id = project.id
            self._validate(request)

            trace.advance(QueryState.RATE_LIMIT_CHECK)
            rate = await self._rate_limiter.acquire(key.key_id, self._tiers.rate_limit(project.tier))
            if not rate.allowed:
                metrics.increment("rate_limit_rejections")
                semcache_metrics.record_rejection("rate_limit")
                raise RateLimitExceededError(
                    f"Rate limit of {rate.limit} requests per window exceeded",
                    limit=rate.limit,
                    remaining=rate.remaining,
                    reset_at=rate.reset_at,
                    retry_after=rate.retry_after(),
                )

            trace.advance(QueryState.QUOTA_CHECK)
            period = current_period()
            try:
                count = await self._quota.reserve(project_id, self._tiers.monthly_quota(project.tier))
            except MonthlyQuotaExceededError:
                await self._rate_limiter.release(key.key_id, rate)
                metrics.increment("quota_rejections")
                semcache_metrics.record_rejection("monthly_quota")
                raise
            if count > 0:
                reserved_period = period

            result = await self._serve(project_id, request, trace, start)
        except (Exception, asyncio.CancelledError) as e:
            failed_in = trace.current
            trace.fail()
            if reserved_period is not None:
                await self._quota.release(project_id, reserved_period)
            log_query_failed(project_id, request, failed_in.value, e)
            raise

        await self._quota.record_outcome(
            project_id, result.cache_hit, result.cost_saved, reserved_period
        )
        total_ms = (time.perf_counter() - start) * 1000
        semcache_metrics.record_query(request.model, result.cache_hit)
        log_query_completed(project_id, request, result, total_ms)
        return QueryOutcome(result=result, rate_limit=rate, project_id=project_id, trace=trace)

    def _validate(self, request: QueryRequest) -> None:
        """Reject bad input before any counter moves."""
        if not isinstance(request.prompt, str) or not request.prompt.strip():
            raise ValidationError("prompt must be a non-empty string")
        if len(request.prompt) > self._max_prompt_chars:
            raise ValidationError(
                f"prompt must be at most {self._max_prompt_chars} characters, "
                f"got {len(request.prompt)}"
            )
        if not isinstance(request.model, str) or not request.model:
            raise ValidationError("model must be a non-empty string")
        if not self._gateway.supports(request.model):
            raise ValidationError(f"Unsupported model: {request.model!r}")
        if request.context is not None and not isinstance(request.context, str):
            raise ValidationError("context must be a string or null")
        if request.context and len(request.context) > self._max_prompt_chars:
            raise ValidationError(f"context must be at most {self._max_prompt_chars} characters")
        self._decision.validate_threshold(request.similarity_threshold)

    async def _serve(
        self, project_id: str, request: QueryRequest, trace: QueryTrace, start: float
    ) -> QueryResult:
        trace.advance(QueryState.EMBEDDING)
        t0 = time.perf_counter()
        vector, model_tag = await self._embedder.embed(request.prompt, request.context)
        embedding_time = time.perf_counter() - t0
        semcache_metrics.record_stage("embedding", embedding_time)

        trace.advance(QueryState.SEARCHING)
        partition = PartitionKey.build(project_id, request.context, request.model)
        t0 = time.perf_counter()
        outcome = await asyncio.to_thread(self._index.search, partition, model_tag, vector)
        search_time = time.perf_counter() - t0
        semcache_metrics.record_stage("search", search_time)
        decision = self._decision.decide(outcome.match, request.similarity_threshold)

        result = None
        if decision.hit:
            result = await self._serve_hit(decision, request.model, trace)
        if result is None:
            trace.advance(QueryState.MISS)
            result = await self._serve_miss(project_id, partition, model_tag, vector, request, trace)

        trace.advance(QueryState.RESPOND)
        if request.include_debug:
            result.debug = QueryDebug(
                embedding_time_ms=round(embedding_time * 1000, 2),
                search_time_ms=round(search_time * 1000, 2),
                total_time_ms=round((time.perf_counter() - start) * 1000, 2),
                matched_cache_entry_id=result.entry_id if result.cache_hit else None,
                cache_entry_count=outcome.partition_size,
            )
        return result

    async def _serve_hit(
        self, decision: Decision, model: str, trace: QueryTrace
    ) -> QueryResult | None:
        entry = await self._store.get_entry(decision.entry_id)
        if entry is None:
            # Expired, deleted elsewhere, or lost by the store: stop matching it
            logger.warning("Indexed entry %s is gone from the store; removing it", decision.entry_id)
            self._index.remove(decision.entry_id)
            return None

        trace.advance(QueryState.HIT)
        await self._touch(entry.id)
        return self._hit_result(entry, decision.display_score, model)

    async def _touch(self, entry_id: str) -> None:
        try:
            await self._store.touch_entry(entry_id, datetime.now(UTC))
        except CacheError as e:
            logger.warning("Failed to update last_accessed for entry %s: %s", entry_id, e)

    def _hit_result(self, entry: CacheEntry, score: float | None, model: str) -> QueryResult:
        cost_saved = self._cost_tracker.saved_by_hit(entry)
        metrics.increment("cache_hits")
        metrics.add_cost_saved(cost_saved)
        semcache_metrics.record_cost_saved(model, cost_saved)
        return QueryResult(
            cache_hit=True,
            response=entry.response,
            similarity_score=score,
            cost_saved=cost_saved,
            llm_provider=CACHE_PROVIDER,
            entry_id=entry.id,
        )

    async def _serve_miss(
        self,
        project_id: str,
        partition: PartitionKey,
        model_tag: str,
        vector: np.ndarray,
        request: QueryRequest,
        trace: QueryTrace,
    ) -> QueryResult:
        flight_key = (partition.storage_key, model_tag, normalize_prompt(request.prompt))
        trace.advance(QueryState.INVOKING)

        def invoke():
            return self._invoke_and_persist(project_id, partition, model_tag, vector, request)

        flight, shared = await self._flights.do(flight_key, invoke)
        if flight.cached_entry is not None and flight.score < request.similarity_threshold:
            # The flight was started under a looser threshold than ours
            flight, shared = await self._flights.do((*flight_key, request.similarity_threshold), invoke)
        if shared:
            metrics.increment("coalesced_requests")
            semcache_metrics.record_coalesced()

        if flight.cached_entry is not None:
            trace.advance(QueryState.HIT)
            score = round(flight.score, SCORE_DISPLAY_DIGITS)
            return self._hit_result(flight.cached_entry, score, request.model)

        trace.advance(QueryState.PERSISTING)
        metrics.increment("cache_misses")
        return QueryResult(
            cache_hit=False,
            response=flight.text,
            similarity_score=None,
            cost_saved=0.0,
            llm_provider=flight.provider,
            entry_id=flight.entry_id,
            coalesced=shared,
        )

    async def _invoke_and_persist(
        self,
        project_id: str,
        partition: PartitionKey,
        model_tag: str,
        vector: np.ndarray,
        request: QueryRequest,
    ) -> _FlightResult:
        semcache_metrics.flight_started()
        try:
            # A flight for this key may have finished between our search and now
            outcome = await asyncio.to_thread(self._index.search, partition, model_tag, vector)
            decision = self._decision.decide(outcome.match, request.similarity_threshold)
            if decision.hit:
                entry = await self._store.get_entry(decision.entry_id)
                if entry is not None:
                    await self._touch(entry.id)
                    return _FlightResult(
                        text=entry.response,
                        provider=CACHE_PROVIDER,
                        entry_id=entry.id,
                        cached_entry=entry,
                        score=decision.score,
                    )

            t0 = time.perf_counter()
            completion = await self._gateway.complete(
                project_id, request.model, [Message(role=Role.USER, content=request.prompt)]
            )
            semcache_metrics.record_stage("provider", time.perf_counter() - t0)

            entry = self._build_entry(project_id, partition, model_tag, vector, request, completion)
            entry_id: str | None = entry.id
            try:
                await self._persist(entry)
            except Exception as e:
                # The answer is still returned; persistence continues in the background
                metrics.increment("persistence_failures")
                log_persistence_failed(project_id, entry.id, "initial", e)
                logger.error("Failed to persist entry %s: %s", entry.id, e)
                self._schedule_retry(entry)
                entry_id = None
            return _FlightResult(
                text=completion.text,
                provider=completion.provider,
                entry_id=entry_id,
            )
        finally:
            semcache_metrics.flight_finished()

    def _build_entry(
        self,
        project_id: str,
        partition: PartitionKey,
        model_tag: str,
        vector: np.ndarray,
        request: QueryRequest,
        completion: Completion,
    ) -> CacheEntry:
        now = datetime.now(UTC)
        expires_at = now + timedelta(seconds=self._entry_ttl) if self._entry_ttl else None
        return CacheEntry(
            project_id=project_id,
            prompt=request.prompt,
            response=completion.text,
            context=partition.context,
            vector=[float(x) for x in vector],
            embedding_model=model_tag,
            target_model=request.model,
            provider=completion.provider,
            prompt_tokens=completion.usage.prompt_tokens,
            completion_tokens=completion.usage.completion_tokens,
            created_at=now,
            last_accessed=now,
            expires_at=expires_at,
        )

    async def _persist(self, entry: CacheEntry) -> None:
        """Store write, then index insert. A failed insert rolls back the store write."""
        t0 = time.perf_counter()
        await self._store.put_entry(entry)
        if not self._index.contains(entry.id):
            try:
                await asyncio.to_thread(
                    self._index.add,
                    entry.partition,
                    entry.embedding_model,
                    entry.id,
                    entry.vector,
                    entry.created_at,
                    entry.expires_at,
                )
            except Exception:
                await self._store.delete_entry(entry.id)
                raise
        semcache_metrics.record_stage("persist", time.perf_counter() - t0)

    def _schedule_retry(self, entry: CacheEntry) -> None:
        task = asyncio.create_task(self._retry_persist(entry))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _retry_persist(self, entry: CacheEntry) -> None:
        try:
            await self._persist_retry.execute_with_retry(self._persist, entry)
        except Exception as e:
            log_persistence_failed(entry.project_id, entry.id, "final", e)
            logger.error("Giving up on persisting entry %s: %s", entry.id, e)
            return
        logger.info("Persisted entry %s after retry", entry.id)

    async def wait_background(self) -> None:
        """Wait for pending persistence retries (shutdown, tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def delete_entry(self, project_id: str, entry_id: str) -> None:
        entry = await self._store.get_entry(entry_id)
        if entry is None or entry.project_id != project_id:
            raise NotFoundError(f"Cache entry {entry_id} not found")
        self._index.remove(entry_id)
        await self._store.delete_entry(entry_id)
        logger.info("Deleted cache entry %s", entry_id)

    async def rebuild_index(self) -> int:
        """Load every live stored entry into the index. Returns the number added."""
        added = 0
        now = datetime.now(UTC)
        async for entry in self._store.iter_entries():
            if entry.is_expired(now) or self._index.contains(entry.id):
                continue
            try:
                self._index.add(
                    entry.partition,
                    entry.embedding_model,
                    entry.id,
                    entry.vector,
                    entry.created_at,
                    entry.expires_at,
                )
            except ValueError as e:
                logger.warning("Skipping entry %s while rebuilding the index: %s", entry.id, e)
                continue
            added += 1
        logger.info("Vector index rebuilt with %d entries", added)
        return added
