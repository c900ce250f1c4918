"""Database and Redis connection helpers shared by the pipeline."""

from services.database import get_database_url, get_sync_session, get_sync_session_factory
from services.redis_client import create_redis_client, get_redis_client

__all__ = [
    "create_redis_client",
    "get_database_url",
    "get_redis_client",
    "get_sync_session",
    "get_sync_session_factory",
]
