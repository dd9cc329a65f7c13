"""
Structured audit logging.

audit_log() writes one row to the audit_logs table. It never raises: a
failed write is logged and the caller carries on.
"""

import logging
from typing import Any, Dict, Optional

from core.store import Store

logger = logging.getLogger(__name__)


AUDIT_ACTIONS = (
    "LOGIN",
    "LOGOUT",
    "SIGNUP",
    "API_CALL",
    "RATE_LIMIT_HIT",
    "ADMIN_ACCESS",
    "PLAN_CHANGE",
    "ROLE_CHANGE",
    "USER_SUSPEND",
    "USER_UNSUSPEND",
    "USER_BAN",
    "USER_UNBAN",
    "TRIAL_EXTEND",
    "USAGE_RESET",
    "ABUSE_FLAG",
    "API_KEY_CREATED",
    "API_KEY_REVOKED",
    "SETTINGS_CHANGE",
)

# Paths the request middleware never records
SKIP_PATHS = frozenset({"/", "/health", "/db/health", "/api/health", "/favicon.ico"})


def audit_log(
    store: Store,
    action: str,
    user_id: Optional[int] = None,
    tenant_id: Optional[int] = None,
    target_user_id: Optional[int] = None,
    ip: Optional[str] = None,
    method: Optional[str] = None,
    path: Optional[str] = None,
    status: Optional[int] = None,
    user_agent: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """
    Write an audit entry.

    Args:
        store: Store instance.
        action: One of AUDIT_ACTIONS.
        user_id: Acting user.
        tenant_id: Acting tenant.
        target_user_id: User the action was applied to (kept in detail).
        ip: Client IP.
        method: HTTP method.
        path: Request path.
        status: Response status code.
        user_agent: Client user agent.
        meta: Extra JSON detail.

    Returns:
        The entry ID, or None if the write failed.
    """
    detail = dict(meta) if meta else None
    if target_user_id is not None:
        detail = detail or {}
        detail["target_user_id"] = target_user_id

    try:
        return store.insert_audit_log(
            action=action,
            user_id=user_id,
            tenant_id=tenant_id,
            ip_address=ip,
            method=method,
            endpoint=path,
            response_status=status,
            user_agent=user_agent,
            detail=detail,
        )
    except Exception as e:
        logger.error(f"Failed to write audit log ({action}): {e}")
        return None
