"""
Per-IP and per-tenant rate limiting with Redis fixed-window counters.

Strategies:
    1. Per-IP per-hour        rate:ip:{ip}:{hour}             TTL 3700 s
    2. Burst per-IP per-sec   rate:burst:{ip}:{second}        TTL 5 s
    3. Per-tenant per-minute  rate:tenant:{id}:{minute}       TTL 120 s
    4. Signups per-IP per-day signup:ip:{ip}:{YYYY-MM-DD}     TTL 86400 s

Every check fails open when Redis is unavailable.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import redis

from core.errors import GatewayError
from core.store import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RateLimitPolicy:
    """
    Thresholds for one route.

    Attributes:
        tenant_per_minute: Max requests per tenant per minute.
        ip_per_hour: Max requests per client IP per hour.
        burst_per_second: Max requests per client IP per second.
    """

    tenant_per_minute: int = 60
    ip_per_hour: int = 300
    burst_per_second: int = 20

    @classmethod
    def from_config(cls, tenant_per_minute: Optional[int] = None) -> "RateLimitPolicy":
        """Build a policy from the rate_limits config section."""
        from core.config import get_rate_limits_config

        config = get_rate_limits_config()
        return cls(
            tenant_per_minute=tenant_per_minute or config.get("tenant_per_minute", 60),
            ip_per_hour=config.get("ip_per_hour", 300),
            burst_per_second=config.get("burst_per_second", 20),
        )


def _hit(redis_client, key: str, ttl: int) -> int:
    count = redis_client.incr(key)
    if count == 1:
        redis_client.expire(key, ttl)
    return count


def enforce_rate_limits(
    redis_client,
    client_ip: str,
    policy: RateLimitPolicy,
    tenant_id: Optional[int] = None,
    now: Optional[float] = None,
) -> None:
    """
    Count this request against the IP, burst and tenant windows.

    Args:
        redis_client: Redis client or None (fail open).
        client_ip: Caller IP.
        policy: Thresholds to apply.
        tenant_id: Authenticated tenant, if any.
        now: Unix time override (tests).

    Raises:
        GatewayError: 429 IP_RATE_LIMIT, BURST_DETECTED or TENANT_RATE_LIMIT.
    """
    if redis_client is None:
        return

    now = time.time() if now is None else now
    try:
        ip_count = _hit(redis_client, f"rate:ip:{client_ip}:{int(now // 3600)}", 3700)
        if ip_count > policy.ip_per_hour:
            raise GatewayError(
                429, "IP_RATE_LIMIT",
                "Too many requests from this IP. Try again later.",
                retry_after_seconds=60,
            )

        burst_count = _hit(redis_client, f"rate:burst:{client_ip}:{int(now)}", 5)
        if burst_count > policy.burst_per_second:
            raise GatewayError(
                429, "BURST_DETECTED",
                "Request rate too high. Slow down.",
                retry_after_seconds=5,
            )

        if tenant_id is not None:
            tenant_count = _hit(redis_client, f"rate:tenant:{tenant_id}:{int(now // 60)}", 120)
            if tenant_count > policy.tenant_per_minute:
                raise GatewayError(
                    429, "TENANT_RATE_LIMIT",
                    "Rate limit exceeded. Try again shortly.",
                    retry_after_seconds=30,
                )
    except redis.RedisError as e:
        logger.error(f"Redis error in rate limits, failing open: {e}")


def enforce_signup_limit(redis_client, client_ip: str, max_per_day: int = 5) -> None:
    """
    Count a signup from this IP.

    Raises:
        GatewayError: 429 SIGNUP_RATE_LIMIT past max_per_day.
    """
    if redis_client is None:
        return

    key = f"signup:ip:{client_ip}:{utcnow().strftime('%Y-%m-%d')}"
    try:
        count = _hit(redis_client, key, 86400)
    except redis.RedisError as e:
        logger.warning(f"Redis error in signup limit, failing open: {e}")
        return

    if count > max_per_day:
        raise GatewayError(
            429, "SIGNUP_RATE_LIMIT",
            "Too many signup attempts from this IP. Try again tomorrow.",
        )


def release_signup_slot(redis_client, client_ip: str) -> None:
    """Give back a signup counted for a login that did not create a user."""
    if redis_client is None:
        return

    key = f"signup:ip:{client_ip}:{utcnow().strftime('%Y-%m-%d')}"
    try:
        redis_client.decr(key)
    except redis.RedisError as e:
        logger.warning(f"Redis error releasing signup slot: {e}")
