"""Redis client construction helpers."""

from __future__ import annotations

from redis import Redis

from config import settings

_client: Redis | None = None


def create_redis_client(url: str | None = None) -> Redis:
    """Construct a Redis client from settings, optionally overriding the URL."""
    redis_config = settings.redis
    return Redis.from_url(
        url=url or redis_config.url,
        socket_connect_timeout=redis_config.connect_timeout_seconds,
        socket_timeout=redis_config.socket_timeout_seconds,
        max_connections=redis_config.max_connections,
        decode_responses=True,
        encoding="utf-8",
    )


def get_redis_client() -> Redis:
    """Return the process-wide Redis client."""
    global _client
    if _client is None:
        _client = create_redis_client()
    return _client
