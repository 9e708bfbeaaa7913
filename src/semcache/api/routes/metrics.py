"""
Metrics endpoint.

Returns all collected in-memory metrics as a JSON snapshot
including request counts, performance percentiles, cache stats,
provider calls and limit rejections.
"""

import logging
import time
from typing import Any

from fastapi import APIRouter, Request

from semcache.core.metrics import get_metrics, metrics

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Operations"])


@router.post("/metrics/reset", summary="Reset all stats")
async def reset_stats(request: Request) -> dict[str, str]:
    """Reset metrics, circuit breakers and uptime. Cached entries are kept."""
    metrics.reset()
    registry = getattr(request.app.state, "registry", None)
    if registry is not None:
        for provider in registry.list_providers():
            provider.circuit_breaker.reset()
    request.app.state.start_time = time.time()
    logger.info("Metrics and circuit breakers reset")
    return {"status": "ok", "message": "Stats reset"}


@router.get("/metrics", summary="Operational metrics")
async def metrics_endpoint(request: Request) -> dict[str, Any]:
    """Return all collected metrics as a JSON snapshot.

    Includes:
    - Request counts (total, by status, by endpoint, active)
    - Performance percentiles (avg, p50, p95, p99)
    - Cache stats (hits, misses, hit rate, coalesced, cost saved)
    - Provider calls and errors, rate-limit and quota rejections
    """
    snapshot = get_metrics()
    index = getattr(request.app.state, "index", None)
    if index is not None:
        snapshot["cache"]["indexed_entries"] = index.total
    return snapshot
