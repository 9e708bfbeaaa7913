"""Shared outbound HTTP client for provider calls."""

import httpx

from semcache.core.config import get_settings


def create_http_client() -> httpx.AsyncClient:
    settings = get_settings()
    # The gateway enforces the total budget; the read timeout only has to outlast it.
    timeout = httpx.Timeout(
        connect=5.0,
        read=settings.gateway.timeout_seconds + 5.0,
        write=10.0,
        pool=5.0,
    )
    limits = httpx.Limits(max_connections=100, max_keepalive_connections=20, keepalive_expiry=30.0)
    return httpx.AsyncClient(timeout=timeout, limits=limits)
