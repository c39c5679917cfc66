"""
Result cache backed by Redis.

Cached model results are JSON payloads stored with a per-call-class TTL.
The cache never fails its caller: read errors are misses and write errors
are logged and dropped.
"""

import json
from typing import Any, Tuple

import redis

from ai_gateway.logging_config import get_logger

logger = get_logger(__name__)


def create_redis_client(url: str) -> redis.Redis:
    """Build a Redis client from a URL (redis:// or rediss://).

    Args:
        url: Redis connection URL, e.g. redis://localhost:6379/0

    Returns:
        Redis client decoding responses to str
    """
    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=2.0,
        socket_connect_timeout=2.0
    )


class ResultCache:
    """Get/set of JSON results keyed by derived cache keys."""

    def __init__(self, client: redis.Redis):
        """Initialize the cache with a Redis client.

        Args:
            client: Connected (or lazily connecting) Redis client
        """
        self.client = client

    def get(self, key: str, label: str = "") -> Tuple[Any, bool]:
        """Read a cached payload.

        A stored JSON null is a hit with value None, so callers must test
        found rather than the value.

        Args:
            key: Cache key
            label: Call class name used in log lines

        Returns:
            (value, found); found is False on miss or on any store error
        """
        try:
            raw = self.client.get(key)
        except (redis.RedisError, OSError) as e:
            logger.warning(
                "Cache GET failed, proceeding without cache",
                cache_key=key,
                error=str(e)
            )
            return None, False

        if raw is None:
            return None, False

        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("Cached payload is not valid JSON, ignoring", cache_key=key, error=str(e))
            return None, False

        logger.info("AI cache hit", cache_key=key, label=label)
        return value, True

    def set(self, key: str, value: Any, ttl: int) -> bool:
        """Store a payload with a TTL in seconds.

        Args:
            key: Cache key
            value: JSON-serializable payload
            ttl: Time to live in seconds, supplied by the caller

        Returns:
            True if the value was written, False if the write failed

        Raises:
            ValueError: If ttl is not positive
        """
        if ttl <= 0:
            raise ValueError("ttl must be > 0")

        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.warning("Cache SET skipped, payload not serializable", cache_key=key, error=str(e))
            return False

        try:
            self.client.set(key, payload, ex=ttl)
        except (redis.RedisError, OSError) as e:
            logger.warning("Cache SET failed", cache_key=key, error=str(e))
            return False
        return True
