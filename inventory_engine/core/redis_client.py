"""
Inventory Engine — Redis client singleton (pub/sub + stock cache)
"""
import redis

from inventory_engine.core.config import get_settings

settings = get_settings()
_redis_client: redis.Redis | None = None


def get_redis() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=settings.HEALTH_CHECK_TIMEOUT,
            socket_timeout=settings.BROADCAST_TIMEOUT_SECONDS,
        )
    return _redis_client


def close_redis():
    global _redis_client
    if _redis_client:
        _redis_client.close()
        _redis_client = None
