"""Redis connection shared by the display caches and the event emitter."""

import json
from typing import Any, cast

import redis
import structlog

from visitflow.config import settings

logger = structlog.get_logger(__name__)

_redis_client: redis.Redis | None = None


def get_redis_client() -> redis.Redis:
    """Return the process-wide Redis client, creating it on first use."""
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            username=settings.redis_username,
            password=settings.redis_password,
            decode_responses=settings.redis_decode_responses,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30,
        )

    return _redis_client


async def check_redis_connection() -> bool:
    """Ping Redis; False when it cannot be reached."""
    try:
        get_redis_client().ping()
    except Exception as e:
        logger.warning("redis_ping_failed", error=str(e))
        return False
    return True


def close_redis_connection() -> None:
    global _redis_client

    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None


class CacheManager:
    """
    JSON cache for display reads such as slot grids and queue counters.

    Nothing the engine decides is read from here. Every operation fails
    open: an outage turns reads into misses and writes into no-ops.
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    def get_json(self, key: str) -> Any | None:
        """Cached value for ``key``, or None on a miss or Redis error."""
        try:
            raw = cast(str | None, self.redis.get(key))
        except Exception as e:
            logger.debug("cache_read_failed", key=key, error=str(e))
            return None
        return json.loads(raw) if raw else None

    def set_json(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """
        Store ``value`` as JSON.

        Args:
            key: Cache key
            value: JSON-serialisable value; dates and decimals are stringified
            ttl: Expiry in seconds, or None to keep until deleted

        Returns:
            True if Redis accepted the write
        """
        payload = json.dumps(value, default=str)
        try:
            if ttl:
                self.redis.setex(key, ttl, payload)
            else:
                self.redis.set(key, payload)
        except Exception as e:
            logger.debug("cache_write_failed", key=key, error=str(e))
            return False
        return True

    def delete(self, key: str) -> bool:
        try:
            self.redis.delete(key)
        except Exception as e:
            logger.debug("cache_delete_failed", key=key, error=str(e))
            return False
        return True


def availability_cache_key(doctor_id: str, slot_date: object) -> str:
    return f"slots:{doctor_id}:{slot_date}"


def queue_stats_cache_key(department_id: str, queue_date: object) -> str:
    return f"queue:stats:{department_id}:{queue_date}"
