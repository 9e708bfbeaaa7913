"""Tests for the per-provider circuit breaker."""

import os
import sys
import time

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from semcache.core.circuit_breaker import CircuitBreaker, CircuitBreakerState
from semcache.core.metrics import metrics


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


def tripped(threshold: int = 2, recovery: float = 30.0) -> CircuitBreaker:
    cb = CircuitBreaker(name="openai", failure_threshold=threshold, recovery_timeout=recovery)
    for _ in range(threshold):
        cb.record_failure()
    return cb


class TestCircuitBreaker:
    def test_starts_closed(self):
        cb = CircuitBreaker(name="openai")
        assert cb.state == CircuitBreakerState.Closed
        assert cb.can_execute() is True
        assert cb.retry_after() == 0

    def test_opens_at_threshold(self):
        cb = CircuitBreaker(name="openai", failure_threshold=3)
        cb.record_failure()
        cb.record_failure()
        assert cb.state == CircuitBreakerState.Closed
        cb.record_failure()
        assert cb.state == CircuitBreakerState.Open
        assert cb.can_execute() is False

    def test_success_clears_consecutive_failures(self):
        cb = CircuitBreaker(name="openai", failure_threshold=3)
        cb.record_failure()
        cb.record_failure()
        cb.record_success()
        cb.record_failure()
        assert cb.state == CircuitBreakerState.Closed
        assert cb.failure_count == 1

    def test_retry_after_counts_down_recovery(self):
        cb = tripped(recovery=30.0)
        assert 1 <= cb.retry_after() <= 30

    def test_trip_is_counted_once(self):
        cb = tripped(threshold=2)
        cb.record_failure()
        cb.record_failure()
        assert metrics.get_metrics()["providers"]["circuit_breaker_trips"] == 1

    def test_half_open_probe_after_recovery(self):
        cb = tripped(recovery=0.05)
        time.sleep(0.1)
        assert cb.can_execute() is True
        assert cb.state == CircuitBreakerState.HalfOpen

        cb.record_success()
        assert cb.state == CircuitBreakerState.Closed
        assert cb.failure_count == 0

    def test_failed_probe_reopens(self):
        cb = tripped(recovery=0.05)
        time.sleep(0.1)
        cb.can_execute()
        cb.record_failure()
        assert cb.state == CircuitBreakerState.Open

    def test_reset(self):
        cb = tripped()
        cb.reset()
        assert cb.state == CircuitBreakerState.Closed
        assert cb.failure_count == 0
        assert cb.can_execute() is True


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
