"""
Tenant context resolution.

Runs after identity verification and produces the SaasContext that every
downstream check (usage limits, admin RBAC, audit) works from:

    1. Look up the user by Firebase UID; provision user + tenant on first login
       (subject to the per-IP signup limit).
    2. Block banned / suspended users (SUPER_ADMIN is never blocked).
    3. Resolve the tenant membership and plan.
    4. Auto-expire trials (TRIAL past trial_ends_at -> PAST_DUE).
    5. Record login activity.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional

from core.audit import audit_log
from core.errors import GatewayError
from core.identity import AuthInfo
from core.rate_limits import enforce_signup_limit, release_signup_slot
from core.store import DuplicateUserError, Store, parse_db_time, utcnow

logger = logging.getLogger(__name__)


SESSION_GAP = timedelta(minutes=30)


@dataclass
class SaasContext:
    """
    Everything known about the caller once authenticated.

    Attributes:
        user: User row.
        tenant: Tenant row.
        role: Tenant membership role (MEMBER or ADMIN).
        plan: Plan row of the tenant.
        api_key: API key row when authenticated with a key.
        usage: Monthly counter snapshot set by usage enforcement.
        video_usage: Video counter snapshot set by usage enforcement.
    """

    user: Dict[str, Any]
    tenant: Dict[str, Any]
    role: str
    plan: Dict[str, Any]
    api_key: Optional[Dict[str, Any]] = None
    usage: Dict[str, Any] = field(default_factory=dict)
    video_usage: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_super_admin(self) -> bool:
        return self.user.get("system_role") == "SUPER_ADMIN"


def trial_expired(tenant: Dict[str, Any]) -> bool:
    if tenant.get("subscription_status") != "TRIAL":
        return False
    trial_ends_at = parse_db_time(tenant.get("trial_ends_at"))
    return trial_ends_at is not None and trial_ends_at < utcnow()


def expire_trial_if_needed(store: Store, tenant: Dict[str, Any]) -> Dict[str, Any]:
    """Persist TRIAL -> PAST_DUE when the trial has ended; returns the current tenant."""
    if not trial_expired(tenant):
        return tenant
    logger.info(f"Trial expired for tenant {tenant['id']}, marking PAST_DUE")
    return store.update_tenant(tenant["id"], subscription_status="PAST_DUE")


def resolve_tenant_context(
    store: Store,
    redis_client,
    auth: AuthInfo,
    client_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    signup_limit: int = 5,
) -> SaasContext:
    """
    Build the SaasContext for a verified identity.

    Args:
        store: Store instance.
        redis_client: Redis client or None.
        auth: Verified identity.
        client_ip: Caller IP (recorded on signup).
        user_agent: Caller user agent (recorded on signup).
        signup_limit: Max signups per IP per day.

    Returns:
        SaasContext for the caller.

    Raises:
        GatewayError: 429 SIGNUP_RATE_LIMIT, 403 account_banned /
            account_suspended, 500 default_plan_missing /
            tenant_membership_missing.
    """
    user = store.get_user_by_firebase_uid(auth.uid)

    if user is None:
        enforce_signup_limit(redis_client, client_ip or "unknown", signup_limit)
        try:
            user, tenant, _ = store.provision_user(
                firebase_uid=auth.uid,
                email=auth.email,
                provider=auth.provider,
                signup_ip=client_ip,
                signup_user_agent=user_agent,
                display_name=auth.display_name,
            )
        except DuplicateUserError as e:
            release_signup_slot(redis_client, client_ip or "unknown")
            user = e.user
        except LookupError:
            raise GatewayError(500, "default_plan_missing", "Default plan is not configured.")
        else:
            audit_log(
                store,
                "SIGNUP",
                user_id=user["id"],
                tenant_id=tenant["id"],
                ip=client_ip,
                user_agent=user_agent,
                meta={"provider": auth.provider},
            )

    if user.get("system_role") != "SUPER_ADMIN":
        if user.get("is_banned"):
            raise GatewayError(
                403, "account_banned", user.get("ban_reason") or "Your account has been banned"
            )
        if user.get("is_suspended"):
            raise GatewayError(
                403, "account_suspended",
                user.get("suspend_reason") or "Your account has been suspended",
            )

    membership = store.get_membership(user["id"])
    if membership is None:
        raise GatewayError(500, "tenant_membership_missing", "User has no tenant.")

    tenant = store.get_tenant(membership["tenant_id"])
    tenant = expire_trial_if_needed(store, tenant)
    plan = store.get_plan(tenant["plan_id"])

    last_login = parse_db_time(user.get("last_login_at"))
    new_session = last_login is None or last_login < utcnow() - SESSION_GAP
    store.record_login(user["id"], new_session)

    return SaasContext(user=user, tenant=tenant, role=membership["role"], plan=plan)
