"""
SemCache: semantic caching service for LLM applications.

Application entry point. Configures middleware, registers routes,
and manages the application lifespan (startup/shutdown).
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any

import httpx
import redis.asyncio as redis
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from semcache.api.errors import register_exception_handlers
from semcache.api.routes.health import router as health_router
from semcache.api.routes.metrics import router as metrics_router
from semcache.api.v1.admin import router as admin_router
from semcache.api.v1.projects import router as projects_router
from semcache.api.v1.query import router as query_router
from semcache.core.circuit_breaker import CircuitBreaker
from semcache.core.config import Settings, get_settings
from semcache.core.crypto import create_field_codec
from semcache.core.http import create_http_client
from semcache.core.logging_config import configure_logging
from semcache.core.quota import InMemoryQuotaTracker, RedisQuotaTracker
from semcache.core.rate_limiter import InMemoryRateLimiter, RateLimiter
from semcache.core.redis import create_redis_client
from semcache.core.retry import RetryPolicy
from semcache.middleware.trace import TraceMiddleware
from semcache.providers.anthropic import AnthropicProvider
from semcache.providers.gateway import ProviderGateway
from semcache.providers.google import GoogleProvider
from semcache.providers.openai import OpenAIProvider
from semcache.providers.registry import ProviderRegistry
from semcache.services.auth import InMemoryKeyStore, RedisKeyStore
from semcache.services.cache_store import InMemoryCacheStore, RedisCacheStore
from semcache.services.embedding import Embedder, EmbeddingService
from semcache.services.orchestrator import QueryOrchestrator
from semcache.services.vector_index import VectorIndex

# Configure logging with trace ID injection before anything else
configure_logging()

logger = logging.getLogger(__name__)


def build_registry(settings: Settings, http_client: httpx.AsyncClient) -> ProviderRegistry:
    """Register every provider, each with its own circuit breaker.

    Providers are registered without a service key too: projects bring
    their own credentials.
    """
    registry = ProviderRegistry()
    providers = (
        (OpenAIProvider, "openai", settings.openai_base_url),
        (AnthropicProvider, "anthropic", settings.anthropic_base_url),
        (GoogleProvider, "google", settings.google_base_url),
    )
    for provider_cls, name, base_url in providers:
        cb = CircuitBreaker(
            name=name,
            failure_threshold=settings.gateway.circuit_failure_threshold,
            recovery_timeout=settings.gateway.circuit_recovery_seconds,
        )
        registry.register(provider_cls(circuit_breaker=cb, client=http_client, base_url=base_url))
    return registry


def wire_state(
    state: Any,
    settings: Settings,
    embedder: Embedder,
    http_client: httpx.AsyncClient,
    redis_client: redis.Redis | None = None,
) -> None:
    """Build every component and attach it to the application state."""
    # --- Field encryption ---
    secret = settings.encryption.master_secret
    codec = create_field_codec(
        secret.get_secret_value() if secret else None,
        settings.encryption.salt,
        settings.encryption.iterations,
        production=settings.is_production,
    )
    # --- Stores + usage gates ---
    prefix = settings.redis.key_prefix
    window = settings.rate_limit_window_seconds

    if redis_client is not None:
        state.store = RedisCacheStore(redis_client, codec, prefix)
        state.key_store = RedisKeyStore(redis_client, prefix)
        state.rate_limiter = RateLimiter(redis_client, window, prefix)
        state.quota = RedisQuotaTracker(redis_client, prefix)
        state.store_backend = "redis"
    else:
        state.store = InMemoryCacheStore(codec)
        state.key_store = InMemoryKeyStore()
        state.rate_limiter = InMemoryRateLimiter(window)
        state.quota = InMemoryQuotaTracker()
        state.store_backend = "memory"

    state.redis = redis_client
    state.settings = settings
    state.admin_token = settings.admin_token.get_secret_value() if settings.admin_token else None
    # --- Provider Registry + Gateway ---
    state.registry = build_registry(settings, http_client)
    state.gateway = ProviderGateway(
        state.registry,
        state.store,
        timeout_seconds=settings.gateway.timeout_seconds,
        fallback_keys=settings.fallback_provider_keys(),
    )
    # --- Vector Index + Orchestrator ---
    state.index = VectorIndex(
        index_type=settings.index.type,
        hnsw_m=settings.index.hnsw_m,
        ef_search=settings.index.hnsw_ef_search,
        candidate_k=settings.index.candidate_k,
        exact_search_max=settings.index.exact_search_max,
    )
    state.embedder = embedder
    state.orchestrator = QueryOrchestrator(
        key_store=state.key_store,
        rate_limiter=state.rate_limiter,
        quota=state.quota,
        embedder=embedder,
        index=state.index,
        store=state.store,
        gateway=state.gateway,
        tiers=settings.tiers,
        entry_ttl_seconds=settings.cache.entry_ttl_seconds,
        max_prompt_chars=settings.cache.max_prompt_chars,
        persist_retry=RetryPolicy(
            max_attempts=settings.persist_retry.max_attempts,
            base_delay=settings.persist_retry.base_delay,
            max_delay=settings.persist_retry.max_delay,
        ),
    )


async def connect_redis(settings: Settings) -> redis.Redis | None:
    if settings.store_backend != "redis":
        logger.info("STORE_BACKEND=memory; cache entries will not survive a restart")
        return None
    client = create_redis_client()
    try:
        await client.ping()
    except redis.RedisError as e:
        await client.aclose()
        if settings.is_production:
            raise
        logger.warning("Redis unreachable (%s); falling back to in-memory stores", e)
        return None
    logger.info("Redis connected successfully")
    return client


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown."""
    app.state.start_time = time.time()
    settings = get_settings()

    # --- Redis (optional outside production) ---
    redis_client = await connect_redis(settings)
    http_client = create_http_client()
    # --- Embedding model ---
    embedder = EmbeddingService(settings.embedding.model_name, settings.embedding.model_version)
    wire_state(app.state, settings, embedder, http_client, redis_client)
    # Entries survive restarts in Redis; the index does not
    await app.state.orchestrator.rebuild_index()

    logger.info("SemCache started (version 0.1.0, store=%s)", app.state.store_backend)
    yield

    # --- Cleanup ---
    await app.state.orchestrator.wait_background()
    await http_client.aclose()
    if redis_client is not None:
        await redis_client.aclose()
    logger.info("SemCache shutdown complete")


app = FastAPI(
    title="SemCache",
    description=(
        "Semantic cache for LLM applications. Answers prompts that are similar to "
        "previously answered ones from a per-project cache, and forwards the rest "
        "to the target model provider."
    ),
    version="0.1.0",
    openapi_tags=[
        {"name": "Cache", "description": "Semantic cache queries."},
        {"name": "Projects", "description": "Provider credentials, usage and cache entries."},
        {"name": "Administration", "description": "Projects and API keys."},
        {"name": "Operations", "description": "Health checks, metrics, and monitoring."},
    ],
    lifespan=lifespan,
)

register_exception_handlers(app)

# Middleware: last added = outermost (first to execute on request)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(TraceMiddleware)

# API routes (versioned)
app.include_router(query_router)
app.include_router(admin_router)
app.include_router(projects_router)

# Operational routes (unversioned)
app.include_router(health_router)
app.include_router(metrics_router)

metrics_app = make_asgi_app()
app.mount("/prometheus", metrics_app)


def run() -> None:
    settings = get_settings()
    uvicorn.run("semcache.main:app", host=settings.host, port=settings.port)
