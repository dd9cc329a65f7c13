"""
Redis connection used for rate-limit and usage counters.

Redis is optional: when no URL is configured or the server cannot be
reached, get_redis() returns None and every caller fails open. After a
failed connection, no new attempt is made for redis.retry_after_sec.
"""

import logging
import time
from typing import Optional

import redis

from core.config import get_redis_config

logger = logging.getLogger(__name__)

_redis_instance: Optional[redis.Redis] = None
_unavailable_until: float = 0.0


def get_redis(now: Optional[float] = None) -> Optional[redis.Redis]:
    """
    Get the shared Redis client, connecting on first use.

    Args:
        now: Monotonic time override (tests).

    Returns:
        A connected redis.Redis, or None if Redis is not configured or
        not reachable.
    """
    global _redis_instance, _unavailable_until

    if _redis_instance is not None:
        return _redis_instance

    redis_config = get_redis_config()
    url = redis_config.get("url")
    if not url:
        return None

    now = time.monotonic() if now is None else now
    if now < _unavailable_until:
        return None

    timeout = redis_config.get("socket_timeout_sec", 3)
    try:
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=timeout,
            socket_timeout=timeout,
        )
        client.ping()
    except redis.RedisError as e:
        retry_after = redis_config.get("retry_after_sec", 30)
        logger.warning(f"Redis unavailable at {url}, retrying in {retry_after}s: {e}")
        _unavailable_until = now + retry_after
        return None

    logger.info(f"Connected to Redis at {url}")
    _redis_instance = client
    _unavailable_until = 0.0
    return _redis_instance


def set_redis(client: Optional[redis.Redis]) -> None:
    """Replace the shared client (tests inject fakeredis here)."""
    global _redis_instance, _unavailable_until
    _redis_instance = client
    _unavailable_until = 0.0
