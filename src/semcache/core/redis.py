"""Redis client factory."""

import redis.asyncio as redis

from semcache.core.config import get_settings


def create_redis_client() -> redis.Redis:
    settings = get_settings()
    password = settings.redis.password.get_secret_value() if settings.redis.password else None
    return redis.Redis(
        host=settings.redis.host,
        port=settings.redis.port,
        db=settings.redis.db,
        password=password,
        decode_responses=True,
        socket_timeout=settings.redis.socket_timeout,
    )
