"""
Health check endpoint.

Returns the overall system health including subsystem checks
for cache store connectivity, circuit breaker states and index size.
"""

import logging
import time
from datetime import UTC, datetime

from fastapi import APIRouter, Request

from semcache.api.schemas.health import (
    CircuitBreakerCheck,
    HealthChecks,
    HealthResponse,
    IndexHealthCheck,
    StoreHealthCheck,
)
from semcache.domain.exceptions import CacheError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Operations"])

VERSION = "0.1.0"


@router.get("/health", summary="System health check")
async def health_check(request: Request) -> HealthResponse:
    """Return overall system health with subsystem checks.

    Status logic:
    - Store down                          -> unhealthy
    - Any circuit breaker OPEN            -> degraded
    - Otherwise                           -> healthy
    """
    state = request.app.state

    # --- Store health check ---
    store_healthy = False
    start = time.perf_counter()
    try:
        store_healthy = await state.store.ping()
    except CacheError as e:
        logger.warning("Store health check failed: %s", e)
    store_latency_ms = round((time.perf_counter() - start) * 1000, 2)

    # --- Circuit breaker checks ---
    circuit_breakers: dict[str, CircuitBreakerCheck] = {}
    for provider in state.registry.list_providers():
        cb = provider.circuit_breaker
        last_failure = None
        if cb.last_failure_time > 0:
            last_failure = datetime.fromtimestamp(cb.last_failure_time, tz=UTC)
        circuit_breakers[provider.name] = CircuitBreakerCheck(
            state=cb.state.value.upper(),
            failure_count=cb.failure_count,
            last_failure=last_failure,
        )

    any_breaker_open = any(cb.state == "OPEN" for cb in circuit_breakers.values())
    if not store_healthy:
        status = "unhealthy"
    elif any_breaker_open:
        status = "degraded"
    else:
        status = "healthy"

    start_time = getattr(state, "start_time", time.time())
    return HealthResponse(
        status=status,
        version=VERSION,
        timestamp=datetime.now(UTC),
        uptime_seconds=round(time.time() - start_time, 1),
        checks=HealthChecks(
            store=StoreHealthCheck(
                status="healthy" if store_healthy else "unhealthy",
                backend=state.store_backend,
                latency_ms=store_latency_ms,
            ),
            circuit_breakers=circuit_breakers,
            index=IndexHealthCheck(
                entries=state.index.total,
                in_flight=len(state.orchestrator.flights),
            ),
        ),
    )
