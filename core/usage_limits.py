"""
Subscription and plan enforcement.

Enforcement chain per request (SUPER_ADMIN bypasses all of it):
    subscription status -> plan feature flag -> daily counter
    -> monthly counter -> monthly video counter (video routes only)

Redis counters (UTC calendar):
    Monthly:  usage:tenant:{id}:month:{YYYY-MM}     TTL 35 days
    Daily:    usage:tenant:{id}:day:{YYYY-MM-DD}    TTL 48 hours
    Video:    video:tenant:{id}:month:{YYYY-MM}     TTL 35 days

Counters fail open: if Redis is missing or errors, the request proceeds.
Limits of 0 or None mean unlimited.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

import redis

from core.errors import GatewayError
from core.plans import FEATURE_COLUMNS
from core.store import utcnow

logger = logging.getLogger(__name__)


TTL_35_DAYS = 35 * 24 * 60 * 60
TTL_48_HOURS = 48 * 60 * 60


# =============================================================================
# Key helpers
# =============================================================================

def month_key(tenant_id: int, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"usage:tenant:{tenant_id}:month:{now.strftime('%Y-%m')}"


def day_key(tenant_id: int, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"usage:tenant:{tenant_id}:day:{now.strftime('%Y-%m-%d')}"


def video_month_key(tenant_id: int, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"video:tenant:{tenant_id}:month:{now.strftime('%Y-%m')}"


def seconds_until_midnight(now: Optional[datetime] = None) -> int:
    """Seconds until the daily counter rolls over (UTC midnight)."""
    now = now or utcnow()
    midnight = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return math.ceil((midnight - now).total_seconds())


def _increment(redis_client, key: str, ttl: int) -> int:
    current = redis_client.incr(key)
    if current == 1:
        redis_client.expire(key, ttl)
    return current


def _is_limited(limit: Optional[int]) -> bool:
    return limit is not None and limit > 0


# =============================================================================
# Enforcement
# =============================================================================

def check_subscription_status(status: str) -> None:
    """
    Raise if the tenant's subscription does not allow usage.

    Raises:
        GatewayError: 403 ACCOUNT_SUSPENDED / SUBSCRIPTION_CANCELED /
            SUBSCRIPTION_PAST_DUE.
    """
    if status == "SUSPENDED":
        raise GatewayError(403, "ACCOUNT_SUSPENDED", "Your account has been suspended. Contact support.")
    if status == "CANCELED":
        raise GatewayError(
            403, "SUBSCRIPTION_CANCELED",
            "Your subscription has been canceled. Please resubscribe.",
        )
    if status == "PAST_DUE":
        raise GatewayError(
            403, "SUBSCRIPTION_PAST_DUE",
            "Your trial has expired or payment is past due. Please upgrade your plan.",
        )


def enforce_usage(
    ctx,
    redis_client,
    feature_column: Optional[str] = None,
    feature_name: Optional[str] = None,
    is_video: bool = False,
) -> Dict[str, str]:
    """
    Run the usage enforcement chain for one request.

    Args:
        ctx: SaasContext (user, tenant, role, plan).
        redis_client: Redis client or None (fail open).
        feature_column: Plan boolean column gating this route.
        feature_name: Human-readable feature name for the error message.
        is_video: Also count against the monthly video limit.

    Returns:
        Response headers to attach (soft daily limit warnings), possibly empty.

    Raises:
        GatewayError: When any step of the chain rejects the request.
    """
    if ctx is None or ctx.tenant is None or ctx.plan is None:
        raise GatewayError(500, "CONTEXT_MISSING", "Tenant context not loaded.")

    if ctx.user.get("system_role") == "SUPER_ADMIN":
        return {}

    tenant, plan = ctx.tenant, ctx.plan

    # 1. Subscription status gate
    check_subscription_status(tenant["subscription_status"])

    # 2. Feature flag
    if feature_column and feature_column in FEATURE_COLUMNS:
        if not plan.get(feature_column):
            feature = feature_name or FEATURE_COLUMNS[feature_column]
            raise GatewayError(
                403, "FEATURE_NOT_ALLOWED",
                f"Your plan does not include {feature}. Please upgrade.",
                feature=feature,
            )

    if redis_client is None:
        return {}

    headers: Dict[str, str] = {}
    try:
        # 3. Daily limit
        daily_limit = plan.get("daily_request_limit")
        if _is_limited(daily_limit):
            daily_current = _increment(redis_client, day_key(tenant["id"]), TTL_48_HOURS)
            if daily_current > daily_limit:
                if plan.get("soft_daily_limit"):
                    headers["X-Daily-Limit-Warning"] = "true"
                    headers["X-Daily-Usage"] = str(daily_current - 1)
                    headers["X-Daily-Limit"] = str(daily_limit)
                else:
                    raise GatewayError(
                        429, "DAILY_LIMIT_REACHED",
                        f"Daily request limit ({daily_limit}) reached. Try again tomorrow.",
                        usage=daily_current - 1,
                        limit=daily_limit,
                        retry_after_seconds=seconds_until_midnight(),
                    )

        # 4. Monthly limit
        monthly_limit = plan.get("monthly_request_limit")
        if _is_limited(monthly_limit):
            monthly_current = _increment(redis_client, month_key(tenant["id"]), TTL_35_DAYS)
            if monthly_current > monthly_limit:
                raise GatewayError(
                    429, "PLAN_LIMIT_REACHED",
                    f"Monthly request limit ({monthly_limit}) reached. Please upgrade your plan.",
                    usage=monthly_current - 1,
                    limit=monthly_limit,
                )
            ctx.usage = {"month_current": monthly_current, "month_limit": monthly_limit}

        # 5. Monthly video limit
        if is_video:
            video_limit = plan.get("monthly_video_limit")
            if _is_limited(video_limit):
                video_current = _increment(redis_client, video_month_key(tenant["id"]), TTL_35_DAYS)
                if video_current > video_limit:
                    raise GatewayError(
                        429, "VIDEO_LIMIT_REACHED",
                        f"Monthly video processing limit ({video_limit}) reached. "
                        "Please upgrade your plan.",
                        usage=video_current - 1,
                        limit=video_limit,
                    )
                ctx.video_usage = {"current": video_current, "limit": video_limit}

    except redis.RedisError as e:
        logger.error(f"Redis error in usage limits, failing open: {e}")

    return headers


def check_image_sizes(ctx, files: Iterable[Tuple[str, int]]) -> None:
    """
    Enforce the plan's per-image size limit.

    Args:
        ctx: SaasContext.
        files: (filename, size_in_bytes) pairs.

    Raises:
        GatewayError: 413 IMAGE_TOO_LARGE for the first oversized file.
    """
    max_mb = (ctx.plan or {}).get("max_image_size")
    if not max_mb or max_mb <= 0:
        return
    if ctx.user.get("system_role") == "SUPER_ADMIN":
        return

    max_bytes = max_mb * 1024 * 1024
    files = list(files)
    for filename, size in files:
        if size > max_bytes:
            if len(files) == 1:
                message = f"Image exceeds your plan limit of {max_mb}MB."
            else:
                message = (
                    f'Image "{filename}" ({size / 1024 / 1024:.1f}MB) '
                    f"exceeds your plan limit of {max_mb}MB."
                )
            raise GatewayError(413, "IMAGE_TOO_LARGE", message, max_size_mb=max_mb)


# =============================================================================
# Counter maintenance
# =============================================================================

def get_usage_snapshot(redis_client, tenant_id: int) -> Dict[str, int]:
    """Current month/day/video counters for a tenant (zeros if Redis is down)."""
    snapshot = {"month_requests": 0, "day_requests": 0, "month_videos": 0}
    if redis_client is None:
        return snapshot
    try:
        month, day, video = redis_client.mget(
            month_key(tenant_id), day_key(tenant_id), video_month_key(tenant_id)
        )
        snapshot["month_requests"] = int(month or 0)
        snapshot["day_requests"] = int(day or 0)
        snapshot["month_videos"] = int(video or 0)
    except redis.RedisError as e:
        logger.warning(f"Could not read usage counters for tenant {tenant_id}: {e}")
    return snapshot


def clear_usage_counters(redis_client, tenant_id: int) -> int:
    """
    Delete the tenant's current month/day/video counters.

    Returns:
        Number of keys deleted (0 if Redis is unavailable).
    """
    if redis_client is None:
        return 0
    try:
        return redis_client.delete(
            month_key(tenant_id), day_key(tenant_id), video_month_key(tenant_id)
        )
    except redis.RedisError as e:
        logger.error(f"Usage counter invalidation failed for tenant {tenant_id}: {e}")
        return 0


def reset_tenant_counters(redis_client, tenant_id: int) -> int:
    """
    Delete every usage, video and rate-limit counter of a tenant.

    Returns:
        Number of keys deleted (0 if Redis is unavailable).
    """
    if redis_client is None:
        return 0

    patterns: List[str] = [
        f"usage:tenant:{tenant_id}:*",
        f"video:tenant:{tenant_id}:*",
        f"rate:tenant:{tenant_id}:*",
    ]
    deleted = 0
    try:
        for pattern in patterns:
            keys = list(redis_client.scan_iter(match=pattern))
            if keys:
                deleted += redis_client.delete(*keys)
    except redis.RedisError as e:
        logger.error(f"Usage reset failed for tenant {tenant_id}: {e}")
    return deleted
