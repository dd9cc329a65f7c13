"""
Abuse Detection Module

Periodic scanner for suspicious activity over the last 24 hours:

    1. High client-error rate   >100 4xx API_CALL responses  (MEDIUM, >500 HIGH)
    2. Usage spikes             tenant over monthly limit (HIGH) or above 90% (LOW)
    3. Signup farms             >3 accounts from one IP      (HIGH, >10 CRITICAL)
    4. Rate-limit offenders     >20 RATE_LIMIT_HIT entries   (MEDIUM, >100 HIGH)

Each finding becomes an AbuseFlag unless the same (user, reason) was
flagged within the last 24 hours. Findings without a user are skipped.

Usage:
    from core.abuse_detection import run_abuse_scan

    flags = run_abuse_scan(store, redis_client)
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

import redis

from core.store import Store, utcnow
from core.usage_limits import month_key

logger = logging.getLogger(__name__)


CLIENT_ERROR_THRESHOLD = 100
CLIENT_ERROR_HIGH = 500
SIGNUP_IP_THRESHOLD = 3
SIGNUP_IP_CRITICAL = 10
RATE_LIMIT_THRESHOLD = 20
RATE_LIMIT_HIGH = 100
USAGE_WARNING_RATIO = 0.9


def _client_error_findings(store: Store, since) -> List[Dict[str, Any]]:
    findings = []
    for row in store.users_with_client_errors(since, CLIENT_ERROR_THRESHOLD):
        findings.append({
            "user_id": row["user_id"],
            "reason": f"High client-error rate: {row['cnt']} 4xx responses in 24h",
            "severity": "HIGH" if row["cnt"] > CLIENT_ERROR_HIGH else "MEDIUM",
        })
    return findings


def _usage_findings(store: Store, redis_client) -> List[Dict[str, Any]]:
    findings = []
    if redis_client is None:
        return findings

    for tenant in store.list_tenants_by_status(["ACTIVE", "TRIAL"]):
        limit = tenant.get("monthly_request_limit")
        if not limit:
            continue

        try:
            current = int(redis_client.get(month_key(tenant["id"])) or 0)
        except redis.RedisError as e:
            logger.warning(f"Skipping usage scan, Redis error: {e}")
            break

        member = store.get_first_member(tenant["id"])
        user_id = member["user_id"] if member else None

        if current > limit:
            findings.append({
                "user_id": user_id,
                "tenant_id": tenant["id"],
                "reason": f"Usage over limit: {current}/{limit} ({round(current / limit * 100)}%)",
                "severity": "HIGH",
            })
        elif current > limit * USAGE_WARNING_RATIO:
            findings.append({
                "user_id": user_id,
                "tenant_id": tenant["id"],
                "reason": f"Usage at 90%+: {current}/{limit}",
                "severity": "LOW",
            })
    return findings


def _signup_ip_findings(store: Store, since) -> List[Dict[str, Any]]:
    findings = []
    for row in store.duplicate_signup_ips(since, SIGNUP_IP_THRESHOLD):
        severity = "CRITICAL" if row["cnt"] > SIGNUP_IP_CRITICAL else "HIGH"
        for user in store.users_by_signup_ip(row["signup_ip"]):
            findings.append({
                "user_id": user["id"],
                "reason": f"Multiple signups from IP {row['signup_ip']}: {row['cnt']} accounts in 24h",
                "severity": severity,
            })
    return findings


def _rate_limit_findings(store: Store, since) -> List[Dict[str, Any]]:
    findings = []
    for row in store.users_with_rate_limit_hits(since, RATE_LIMIT_THRESHOLD):
        findings.append({
            "user_id": row["user_id"],
            "reason": f"{row['cnt']} rate-limit hits in 24h",
            "severity": "HIGH" if row["cnt"] > RATE_LIMIT_HIGH else "MEDIUM",
        })
    return findings


def run_abuse_scan(store: Store, redis_client=None) -> List[Dict[str, Any]]:
    """
    Run one scan pass and persist new flags.

    Args:
        store: Store instance.
        redis_client: Redis client for the usage rule; None skips that rule.

    Returns:
        Every finding evaluated (including ones skipped as duplicates).
        Findings that produced a new flag carry "flag_id".
    """
    since = utcnow() - timedelta(hours=24)

    findings = (
        _client_error_findings(store, since)
        + _usage_findings(store, redis_client)
        + _signup_ip_findings(store, since)
        + _rate_limit_findings(store, since)
    )

    created = 0
    for finding in findings:
        if not finding.get("user_id"):
            continue
        if store.find_recent_abuse_flag(finding["user_id"], finding["reason"], since):
            continue
        flag = store.create_abuse_flag(
            user_id=finding["user_id"],
            reason=finding["reason"],
            severity=finding["severity"],
            tenant_id=finding.get("tenant_id"),
        )
        finding["flag_id"] = flag["id"]
        created += 1

    logger.info(f"Abuse scan complete. {len(findings)} findings evaluated, {created} new flags.")
    return findings


async def abuse_scanner_loop(store: Store, get_redis_client, interval_sec: Optional[int] = 600) -> None:
    """
    Run the scan immediately and then every interval_sec until cancelled.

    Args:
        store: Store instance.
        get_redis_client: Callable returning the Redis client (or None).
        interval_sec: Seconds between scans.
    """
    logger.info(f"Abuse scanner started (interval: {interval_sec}s)")
    while True:
        try:
            await asyncio.to_thread(run_abuse_scan, store, get_redis_client())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Abuse scan failed: {e}")
        await asyncio.sleep(interval_sec)
