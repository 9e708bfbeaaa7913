"""Prometheus metrics and in-memory metrics collector."""

import threading
from collections import deque
from typing import Any

from prometheus_client import Counter, Gauge, Histogram

semcache_queries_total = Counter(
    "semcache_queries_total",
    "Total number of completed cache queries",
    ["model", "outcome"],
)

semcache_cost_saved_total = Counter(
    "semcache_cost_saved_total", "Estimated USD saved by cache hits", ["model"]
)

semcache_provider_calls_total = Counter(
    "semcache_provider_calls_total",
    "Provider completions issued on cache misses",
    ["provider", "model", "status"],
)

semcache_coalesced_total = Counter(
    "semcache_coalesced_total", "Misses served by another request's in-flight provider call"
)

semcache_stage_duration_seconds = Histogram(
    "semcache_stage_duration_seconds",
    "Latency of query pipeline stages in seconds",
    ["stage"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
)

semcache_rejections_total = Counter(
    "semcache_rejections_total", "Queries rejected before any work", ["reason"]
)

semcache_inflight_flights = Gauge(
    "semcache_inflight_flights", "Provider calls currently in flight"
)

semcache_circuit_breaker_state = Gauge(
    "semcache_circuit_breaker_state", "Circuit breaker state: 0=closed, 1=open", ["provider"]
)


class SemCacheMetrics:
    def record_query(self, model: str, hit: bool) -> None:
        semcache_queries_total.labels(model=model, outcome="hit" if hit else "miss").inc()

    def record_cost_saved(self, model: str, amount: float) -> None:
        semcache_cost_saved_total.labels(model=model).inc(amount)

    def record_provider_call(self, provider: str, model: str, status: str) -> None:
        semcache_provider_calls_total.labels(provider=provider, model=model, status=status).inc()

    def record_coalesced(self) -> None:
        semcache_coalesced_total.inc()

    def record_stage(self, stage: str, duration: float) -> None:
        semcache_stage_duration_seconds.labels(stage=stage).observe(duration)

    def record_rejection(self, reason: str) -> None:
        semcache_rejections_total.labels(reason=reason).inc()

    def record_circuit_breaker(self, provider: str, state: int) -> None:
        semcache_circuit_breaker_state.labels(provider=provider).set(state)

    def flight_started(self) -> None:
        semcache_inflight_flights.inc()

    def flight_finished(self) -> None:
        semcache_inflight_flights.dec()


semcache_metrics = SemCacheMetrics()


# In-memory metrics (for /metrics JSON and reset)
class MetricsCollector:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {
            "requests_total": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "coalesced_requests": 0,
            "provider_calls": 0,
            "provider_errors": 0,
            "persistence_failures": 0,
            "rate_limit_rejections": 0,
            "quota_rejections": 0,
            "circuit_breaker_trips": 0,
        }
        self._gauges: dict[str, int] = {"active_requests": 0}
        self._counter_dicts: dict[str, dict[str, int]] = {
            "requests_by_status": {},
            "requests_by_endpoint": {},
        }
        self._observations: dict[str, deque[float]] = {
            "response_time_seconds": deque(maxlen=1000),
        }
        self._cost_saved = 0.0

    def increment(self, metric_name: str, amount: int = 1) -> None:
        with self._lock:
            if metric_name in self._counters:
                self._counters[metric_name] += amount
            elif metric_name in self._gauges:
                self._gauges[metric_name] += amount

    def decrement(self, metric_name: str, amount: int = 1) -> None:
        with self._lock:
            if metric_name in self._gauges:
                self._gauges[metric_name] -= amount

    def observe(self, metric_name: str, value: float) -> None:
        with self._lock:
            if metric_name in self._observations:
                self._observations[metric_name].append(value)

    def increment_dict(self, metric_name: str, key: str, amount: int = 1) -> None:
        with self._lock:
            if metric_name in self._counter_dicts:
                current = self._counter_dicts[metric_name].get(key, 0)
                self._counter_dicts[metric_name][key] = current + amount

    def add_cost_saved(self, amount: float) -> None:
        with self._lock:
            self._cost_saved += amount

    def reset(self) -> None:
        with self._lock:
            self._counters = {k: 0 for k in self._counters}
            self._gauges = {k: 0 for k in self._gauges}
            self._counter_dicts = {k: {} for k in self._counter_dicts}
            self._observations = {k: deque(maxlen=1000) for k in self._observations}
            self._cost_saved = 0.0

    def get_metrics(self) -> dict[str, Any]:
        with self._lock:
            response_times = list(self._observations["response_time_seconds"])
            counters_snapshot = dict(self._counters)
            gauges_snapshot = dict(self._gauges)
            by_status = dict(self._counter_dicts["requests_by_status"])
            by_endpoint = dict(self._counter_dicts["requests_by_endpoint"])
            cost_saved = self._cost_saved
        avg_ms = 0.0
        p50_ms = 0.0
        p95_ms = 0.0
        p99_ms = 0.0
        if response_times:
            sorted_times = sorted(response_times)
            n = len(sorted_times)
            avg_ms = round(sum(sorted_times) / n * 1000, 1)
            p50_ms = round(sorted_times[int(n * 0.5)] * 1000, 1)
            p95_ms = round(sorted_times[min(int(n * 0.95), n - 1)] * 1000, 1)
            p99_ms = round(sorted_times[min(int(n * 0.99), n - 1)] * 1000, 1)
        cache_hits = counters_snapshot["cache_hits"]
        cache_misses = counters_snapshot["cache_misses"]
        total_cache = cache_hits + cache_misses
        hit_rate = round(cache_hits / total_cache, 3) if total_cache > 0 else 0.0
        return {
            "requests": {
                "total": counters_snapshot["requests_total"],
                "by_status": by_status,
                "by_endpoint": by_endpoint,
                "active": gauges_snapshot["active_requests"],
            },
            "performance": {
                "avg_response_time_ms": avg_ms,
                "p50_response_time_ms": p50_ms,
                "p95_response_time_ms": p95_ms,
                "p99_response_time_ms": p99_ms,
            },
            "cache": {
                "hits": cache_hits,
                "misses": cache_misses,
                "hit_rate": hit_rate,
                "coalesced": counters_snapshot["coalesced_requests"],
                "cost_saved": round(cost_saved, 6),
                "persistence_failures": counters_snapshot["persistence_failures"],
            },
            "providers": {
                "calls": counters_snapshot["provider_calls"],
                "errors": counters_snapshot["provider_errors"],
                "circuit_breaker_trips": counters_snapshot["circuit_breaker_trips"],
            },
            "limits": {
                "rate_limit_rejections": counters_snapshot["rate_limit_rejections"],
                "quota_rejections": counters_snapshot["quota_rejections"],
            },
        }


metrics = MetricsCollector()


def get_metrics() -> dict[str, Any]:
    return metrics.get_metrics()
