import logging
import math
import time
from enum import Enum

from semcache.core.metrics import metrics, semcache_metrics

logger = logging.getLogger(__name__)


class CircuitBreakerState(Enum):
    Closed = "closed"
    Open = "open"
    HalfOpen = "half_open"


class CircuitBreaker:
    """Trips on consecutive provider outages; tenant credential errors are not counted."""

    def __init__(self, name: str = "", failure_threshold: int = 3, recovery_timeout: float = 30.0):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time = 0.0
        self.state = CircuitBreakerState.Closed

    def can_execute(self) -> bool:
        if self.state == CircuitBreakerState.Open:
            if time.time() - self.last_failure_time > self.recovery_timeout:
                self.state = CircuitBreakerState.HalfOpen
                return True
            else:
                return False
        else:
            return True

    def retry_after(self) -> int:
        """Seconds until the breaker will let a probe through."""
        if self.state != CircuitBreakerState.Open:
            return 0
        remaining = self.recovery_timeout - (time.time() - self.last_failure_time)
        return max(1, math.ceil(remaining))

    def record_success(self) -> None:
        self.failure_count = 0
        self.state = CircuitBreakerState.Closed
        semcache_metrics.record_circuit_breaker(self.name, 0)

    def reset(self) -> None:
        """Reset circuit breaker to closed state."""
        self.failure_count = 0
        self.last_failure_time = 0.0
        self.state = CircuitBreakerState.Closed
        semcache_metrics.record_circuit_breaker(self.name, 0)

    def record_failure(self) -> None:
        """Record a failed execution attempt."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold and self.state != CircuitBreakerState.Open:
            self.state = CircuitBreakerState.Open
            metrics.increment("circuit_breaker_trips")
            semcache_metrics.record_circuit_breaker(self.name, 1)
            logger.warning(
                "Circuit breaker for '%s' tripped to OPEN after %d failures",
                self.name,
                self.failure_count,
            )
