"""Health and operational response schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class StoreHealthCheck(BaseModel):
    """Cache store health check result."""

    status: Literal["healthy", "unhealthy"]
    backend: Literal["redis", "memory"]
    latency_ms: float


class CircuitBreakerCheck(BaseModel):
    """Circuit breaker state for a single provider."""

    state: Literal["CLOSED", "OPEN", "HALF_OPEN"]
    failure_count: int
    last_failure: datetime | None = None


class IndexHealthCheck(BaseModel):
    entries: int
    in_flight: int


class HealthChecks(BaseModel):
    """Container for all health checks."""

    store: StoreHealthCheck
    circuit_breakers: dict[str, CircuitBreakerCheck]
    index: IndexHealthCheck


class HealthResponse(BaseModel):
    """Full health check response with subsystem checks."""

    status: Literal["healthy", "degraded", "unhealthy"]
    version: str
    timestamp: datetime
    uptime_seconds: float
    checks: HealthChecks
