"""
Admin API Routes

Super-admin endpoints for the admin dashboard. Every request is recorded
as an ADMIN_ACCESS audit entry; state-changing actions write their own
audit entry on top (PLAN_CHANGE, ROLE_CHANGE, USER_BAN, ...).

Endpoints:
    GET  /api/admin/stats
    GET  /api/admin/users, /api/admin/users/{id}
    POST /api/admin/users/{id}/change-plan | change-role | suspend | unsuspend
                                | ban | unban | extend-trial | reset-usage
    GET  /api/admin/audit-logs
    GET  /api/admin/abuse-flags, POST /api/admin/abuse-flags/{id}/resolve
    POST /api/admin/abuse-scan
    GET  /api/admin/plans
    GET  /api/admin/api-keys, GET|DELETE /api/admin/api-keys/{id}
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_client_ip, get_store_dependency, require_super_admin
from api.schemas import ChangePlanRequest, ChangeRoleRequest, ExtendTrialRequest, ReasonRequest
from core.abuse_detection import run_abuse_scan
from core.api_keys import key_status, mask_key
from core.audit import audit_log
from core.errors import GatewayError
from core.identity import set_account_disabled
from core.redis_client import get_redis
from core.store import Store, parse_db_time, utcnow
from core.tenant_context import SaasContext
from core.usage_limits import clear_usage_counters, reset_tenant_counters

logger = logging.getLogger(__name__)

SYSTEM_ROLES = ("USER", "ADMIN", "SUPER_ADMIN")


# ============================================================
# Dependencies / helpers
# ============================================================

def admin_access(
    request: Request,
    ctx: SaasContext = Depends(require_super_admin),
    store: Store = Depends(get_store_dependency),
) -> SaasContext:
    """Require SUPER_ADMIN and record the access."""
    audit_log(
        store,
        "ADMIN_ACCESS",
        user_id=ctx.user["id"],
        tenant_id=ctx.tenant["id"],
        ip=get_client_ip(request),
        method=request.method,
        path=request.url.path,
        user_agent=request.headers.get("user-agent"),
    )
    store.update_user(ctx.user["id"], last_login_at=utcnow())
    return ctx


router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(admin_access)])


def _pagination(total: int, page: int, limit: int) -> Dict[str, int]:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


def _page_params(page: int, limit: int, max_limit: int = 100):
    return max(page, 1), max(1, min(limit, max_limit))


def _get_user_or_404(store: Store, user_id: int) -> Dict[str, Any]:
    user = store.get_user(user_id)
    if user is None:
        raise GatewayError(404, "NOT_FOUND", "User not found")
    return user


def _user_tenant(store: Store, user_id: int) -> Optional[Dict[str, Any]]:
    membership = store.get_membership(user_id)
    if membership is None:
        return None
    return store.get_tenant(membership["tenant_id"])


def _restored_status(store: Store, tenant: Dict[str, Any]) -> str:
    """Status a tenant returns to after an unsuspend/unban."""
    plan = store.get_plan(tenant["plan_id"])
    return "TRIAL" if plan and plan["code"] == "FREE" else "ACTIVE"


def _admin_audit(
    store: Store,
    request: Request,
    ctx: SaasContext,
    action: str,
    target_user_id: Optional[int] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> None:
    audit_log(
        store,
        action,
        user_id=ctx.user["id"],
        tenant_id=ctx.tenant["id"],
        target_user_id=target_user_id,
        ip=get_client_ip(request),
        method=request.method,
        path=request.url.path,
        status=200,
        user_agent=request.headers.get("user-agent"),
        meta=meta,
    )


def _parse_date(value: Optional[str], field: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise GatewayError(400, "VALIDATION_ERROR", f"Invalid {field}", field=field)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _serialize_user(row: Dict[str, Any]) -> Dict[str, Any]:
    tenant = None
    if row.get("tenant_id") is not None:
        tenant = {
            "id": row["tenant_id"],
            "name": row["tenant_name"],
            "role": row["tenant_role"],
            "plan": row["plan_code"],
            "plan_name": row["plan_name"],
            "subscription_status": row["subscription_status"],
            "trial_ends_at": row["trial_ends_at"],
        }
    return {
        "id": row["id"],
        "firebase_uid": row["firebase_uid"],
        "email": row["email"],
        "provider": row["provider"],
        "system_role": row["system_role"],
        "is_suspended": row["is_suspended"],
        "is_banned": row["is_banned"],
        "suspend_reason": row["suspend_reason"],
        "ban_reason": row["ban_reason"],
        "last_login_at": row["last_login_at"],
        "login_count": row["login_count"],
        "created_at": row["created_at"],
        "tenant": tenant,
    }


# ============================================================
# Dashboard
# ============================================================

@router.get("/stats")
async def stats(store: Store = Depends(get_store_dependency)):
    return store.get_admin_stats()


@router.get("/plans")
async def plans(store: Store = Depends(get_store_dependency)):
    return {"plans": store.list_plans()}


# ============================================================
# Users
# ============================================================

@router.get("/users")
async def list_users(
    page: int = 1,
    limit: int = 25,
    plan: Optional[str] = None,
    status: Optional[str] = None,
    role: Optional[str] = None,
    search: Optional[str] = None,
    sort: str = "created_at",
    order: str = "desc",
    store: Store = Depends(get_store_dependency),
):
    page, limit = _page_params(page, limit)
    rows, total = store.list_users(
        status=status, role=role, search=search, plan=plan,
        sort=sort, order=order, page=page, limit=limit,
    )
    return {
        "users": [_serialize_user(row) for row in rows],
        "pagination": _pagination(total, page, limit),
    }


@router.get("/users/{user_id}")
async def get_user(user_id: int, store: Store = Depends(get_store_dependency)):
    """User detail: tenant memberships, recent requests and activity counters."""
    user = _get_user_or_404(store, user_id)

    tenants = []
    membership = store.get_membership(user_id)
    if membership is not None:
        tenant = store.get_tenant(membership["tenant_id"])
        tenant["plan"] = store.get_plan(tenant["plan_id"])
        tenant["role"] = membership["role"]
        tenants.append(tenant)

    today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    flags, _ = store.list_abuse_flags(resolved=None, user_id=user_id, limit=10)

    return {
        "user": user,
        "tenants": tenants,
        "face_search_requests": store.list_recent_requests_for_user(user_id, limit=10),
        "stats": {
            "api_calls_today": store.count_audit_logs("API_CALL", today, user_id=user_id),
            "total_requests": store.count_requests_for_user(user_id),
            "abuse_flags": flags,
        },
    }


@router.post("/users/{user_id}/change-plan")
async def change_plan(
    user_id: int,
    body: ChangePlanRequest,
    request: Request,
    ctx: SaasContext = Depends(admin_access),
    store: Store = Depends(get_store_dependency),
):
    """Move the user's tenant to another plan and restart its counters."""
    if not body.plan_code:
        raise GatewayError(400, "VALIDATION_ERROR", "plan_code is required")
    plan = store.get_plan_by_code(body.plan_code)
    if plan is None:
        raise GatewayError(400, "VALIDATION_ERROR", "Invalid plan code")

    _get_user_or_404(store, user_id)
    tenant = _user_tenant(store, user_id)
    if tenant is None:
        raise GatewayError(400, "VALIDATION_ERROR", "User has no tenant")

    old_plan_id = tenant["plan_id"]
    store.update_tenant(
        tenant["id"],
        plan_id=plan["id"],
        subscription_status="TRIAL" if plan["code"] == "FREE" else "ACTIVE",
    )
    clear_usage_counters(get_redis(), tenant["id"])

    _admin_audit(store, request, ctx, "PLAN_CHANGE", target_user_id=user_id, meta={
        "old_plan_id": old_plan_id,
        "new_plan_code": plan["code"],
    })
    logger.info(f"Admin {ctx.user['id']} changed plan of user {user_id} to {plan['code']}")
    return {"success": True, "message": f"Plan changed to {plan['code']}"}


@router.post("/users/{user_id}/change-role")
async def change_role(
    user_id: int,
    body: ChangeRoleRequest,
    request: Request,
    ctx: SaasContext = Depends(admin_access),
    store: Store = Depends(get_store_dependency),
):
    if body.system_role not in SYSTEM_ROLES:
        raise GatewayError(400, "VALIDATION_ERROR", "Invalid system_role")
    user = _get_user_or_404(store, user_id)
    if user_id == ctx.user["id"] and body.system_role != "SUPER_ADMIN":
        raise GatewayError(403, "forbidden", "SUPER_ADMIN cannot demote themselves")

    store.update_user(user_id, system_role=body.system_role)
    _admin_audit(store, request, ctx, "ROLE_CHANGE", target_user_id=user_id, meta={
        "old_role": user["system_role"],
        "new_role": body.system_role,
    })
    return {"success": True, "message": f"Role changed to {body.system_role}"}


@router.post("/users/{user_id}/suspend")
async def suspend_user(
    user_id: int,
    request: Request,
    body: Optional[ReasonRequest] = None,
    ctx: SaasContext = Depends(admin_access),
    store: Store = Depends(get_store_dependency),
):
    user = _get_user_or_404(store, user_id)
    if user["system_role"] == "SUPER_ADMIN":
        raise GatewayError(403, "forbidden", "SUPER_ADMIN cannot be suspended")

    reason = (body.reason if body else None) or "Suspended by admin"
    store.update_user(user_id, is_suspended=True, suspended_at=utcnow(), suspend_reason=reason)
    tenant = _user_tenant(store, user_id)
    if tenant is not None:
        store.update_tenant(tenant["id"], subscription_status="SUSPENDED")

    _admin_audit(store, request, ctx, "USER_SUSPEND", target_user_id=user_id, meta={"reason": reason})
    return {"success": True, "message": "User suspended"}


@router.post("/users/{user_id}/unsuspend")
async def unsuspend_user(
    user_id: int,
    request: Request,
    ctx: SaasContext = Depends(admin_access),
    store: Store = Depends(get_store_dependency),
):
    _get_user_or_404(store, user_id)
    store.update_user(user_id, is_suspended=False, suspended_at=None, suspend_reason=None)
    tenant = _user_tenant(store, user_id)
    if tenant is not None:
        store.update_tenant(tenant["id"], subscription_status=_restored_status(store, tenant))

    _admin_audit(store, request, ctx, "USER_UNSUSPEND", target_user_id=user_id)
    return {"success": True, "message": "User unsuspended"}


@router.post("/users/{user_id}/ban")
async def ban_user(
    user_id: int,
    request: Request,
    body: Optional[ReasonRequest] = None,
    ctx: SaasContext = Depends(admin_access),
    store: Store = Depends(get_store_dependency),
):
    """Ban a user, disable their Firebase account and cancel their tenant."""
    user = _get_user_or_404(store, user_id)
    if user["system_role"] == "SUPER_ADMIN":
        raise GatewayError(403, "forbidden", "SUPER_ADMIN cannot be banned")

    reason = (body.reason if body else None) or "Banned by admin"
    store.update_user(
        user_id,
        is_banned=True,
        banned_at=utcnow(),
        ban_reason=reason,
        is_suspended=False,
        suspended_at=None,
        suspend_reason=None,
    )
    set_account_disabled(user["firebase_uid"], True)

    tenant = _user_tenant(store, user_id)
    if tenant is not None:
        store.update_tenant(tenant["id"], subscription_status="CANCELED")

    _admin_audit(store, request, ctx, "USER_BAN", target_user_id=user_id, meta={"reason": reason})
    return {"success": True, "message": "User banned and Firebase account disabled"}


@router.post("/users/{user_id}/unban")
async def unban_user(
    user_id: int,
    request: Request,
    ctx: SaasContext = Depends(admin_access),
    store: Store = Depends(get_store_dependency),
):
    user = _get_user_or_404(store, user_id)
    store.update_user(user_id, is_banned=False, banned_at=None, ban_reason=None)
    set_account_disabled(user["firebase_uid"], False)

    tenant = _user_tenant(store, user_id)
    if tenant is not None:
        store.update_tenant(tenant["id"], subscription_status=_restored_status(store, tenant))

    _admin_audit(store, request, ctx, "USER_UNBAN", target_user_id=user_id)
    return {"success": True, "message": "User unbanned"}


@router.post("/users/{user_id}/extend-trial")
async def extend_trial(
    user_id: int,
    request: Request,
    body: Optional[ExtendTrialRequest] = None,
    ctx: SaasContext = Depends(admin_access),
    store: Store = Depends(get_store_dependency),
):
    """Extend the trial from its current end (or from now if already over)."""
    days = body.days if body else 14
    _get_user_or_404(store, user_id)
    tenant = _user_tenant(store, user_id)
    if tenant is None:
        raise GatewayError(400, "VALIDATION_ERROR", "User has no tenant")

    now = utcnow()
    current_end = parse_db_time(tenant.get("trial_ends_at"))
    base = current_end if current_end is not None and current_end > now else now
    new_end = base + timedelta(days=days)

    updated = store.update_tenant(tenant["id"], trial_ends_at=new_end, subscription_status="TRIAL")
    _admin_audit(store, request, ctx, "TRIAL_EXTEND", target_user_id=user_id, meta={"days": days})
    return {
        "success": True,
        "message": f"Trial extended by {days} days",
        "trial_ends_at": updated["trial_ends_at"],
    }


@router.post("/users/{user_id}/reset-usage")
async def reset_usage(
    user_id: int,
    request: Request,
    ctx: SaasContext = Depends(admin_access),
    store: Store = Depends(get_store_dependency),
):
    """Delete the tenant's usage, video and rate-limit counters."""
    _get_user_or_404(store, user_id)
    tenant = _user_tenant(store, user_id)
    if tenant is None:
        raise GatewayError(400, "VALIDATION_ERROR", "User has no tenant")

    deleted = reset_tenant_counters(get_redis(), tenant["id"])
    _admin_audit(store, request, ctx, "USAGE_RESET", target_user_id=user_id, meta={
        "deleted_keys": deleted,
    })
    return {"success": True, "message": "Usage counters reset", "deleted_keys": deleted}


# ============================================================
# Audit logs / abuse
# ============================================================

@router.get("/audit-logs")
async def audit_logs(
    page: int = 1,
    limit: int = 50,
    user_id: Optional[int] = None,
    user_email: Optional[str] = None,
    tenant_id: Optional[int] = None,
    action: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    search: Optional[str] = None,
    store: Store = Depends(get_store_dependency),
):
    page, limit = _page_params(page, limit, max_limit=200)
    rows, total = store.list_audit_logs(
        user_id=user_id,
        user_email=user_email,
        tenant_id=tenant_id,
        action=action,
        start_date=_parse_date(start_date, "start_date"),
        end_date=_parse_date(end_date, "end_date"),
        search=search,
        page=page,
        limit=limit,
    )
    return {"logs": rows, "pagination": _pagination(total, page, limit)}


@router.get("/abuse-flags")
async def abuse_flags(
    resolved: str = "false",
    severity: Optional[str] = None,
    page: int = 1,
    limit: int = 25,
    store: Store = Depends(get_store_dependency),
):
    """List abuse flags; resolved is "false" (default), "true" or "all"."""
    page, limit = _page_params(page, limit)
    resolved_filter = None if resolved == "all" else resolved == "true"
    rows, total = store.list_abuse_flags(
        resolved=resolved_filter, severity=severity, page=page, limit=limit
    )
    flags = []
    for row in rows:
        flag = dict(row)
        flag["user"] = {
            "id": flag["user_id"],
            "email": flag.pop("user_email"),
            "system_role": flag.pop("user_role"),
        }
        flags.append(flag)
    return {"flags": flags, "pagination": _pagination(total, page, limit)}


@router.post("/abuse-flags/{flag_id}/resolve")
async def resolve_flag(
    flag_id: str,
    request: Request,
    ctx: SaasContext = Depends(admin_access),
    store: Store = Depends(get_store_dependency),
):
    flag = store.get_abuse_flag(flag_id)
    if flag is None:
        raise GatewayError(404, "NOT_FOUND", "Flag not found")

    store.resolve_abuse_flag(flag_id, resolved_by=ctx.user["id"])
    _admin_audit(store, request, ctx, "ABUSE_FLAG", target_user_id=flag["user_id"], meta={
        "flag_id": flag_id,
        "resolved": True,
    })
    return {"success": True, "message": "Flag resolved"}


@router.post("/abuse-scan")
async def abuse_scan(
    request: Request,
    ctx: SaasContext = Depends(admin_access),
    store: Store = Depends(get_store_dependency),
):
    """Run the abuse scanner now instead of waiting for the next interval."""
    findings = run_abuse_scan(store, get_redis())
    new_flags = sum(1 for f in findings if f.get("flag_id"))
    _admin_audit(store, request, ctx, "ABUSE_FLAG", meta={"manual": True, "new_flags": new_flags})
    return {"success": True, "new_flags": new_flags, "flags": findings}


# ============================================================
# API keys
# ============================================================

def _serialize_key(key: Dict[str, Any]) -> Dict[str, Any]:
    status = key_status(key)
    return {
        "id": key["id"],
        "name": key["name"],
        "key_prefix": key["key_prefix"],
        "masked_key": mask_key(key["key_prefix"]),
        "scopes": key["scopes"],
        "status": status,
        "is_active": status == "active",
        "last_used_at": key["last_used_at"],
        "expires_at": key["expires_at"],
        "revoked_at": key["revoked_at"],
        "created_at": key["created_at"],
    }


@router.get("/api-keys")
async def list_api_keys(
    search: Optional[str] = None,
    status: Optional[str] = None,
    plan: Optional[str] = None,
    sort: str = "last_used_at",
    order: str = "desc",
    page: int = 1,
    limit: int = 25,
    store: Store = Depends(get_store_dependency),
):
    page, limit = _page_params(page, limit)
    rows, total = store.list_all_api_keys(
        search=search, status=status, plan=plan, sort=sort, order=order, page=page, limit=limit
    )
    keys = []
    for row in rows:
        key = _serialize_key(row)
        key["user"] = {"id": row["user_id"], "email": row["user_email"], "system_role": row["user_role"]}
        key["tenant"] = {"id": row["tenant_id"], "name": row["tenant_name"], "plan": row["plan_code"]}
        keys.append(key)

    return {
        "keys": keys,
        "summary": store.api_key_summary(),
        "pagination": _pagination(total, page, limit),
    }


@router.get("/api-keys/{key_id}")
async def get_api_key(key_id: str, store: Store = Depends(get_store_dependency)):
    """Key detail with call statistics over the last 30 days."""
    api_key = store.get_api_key(key_id)
    if api_key is None:
        raise GatewayError(404, "KEY_NOT_FOUND", "API key not found.")

    user = store.get_user(api_key["user_id"]) or {}
    tenant = store.get_tenant(api_key["tenant_id"]) or {}
    plan = store.get_plan(tenant["plan_id"]) if tenant else None

    key = _serialize_key(api_key)
    key["user"] = {"id": user.get("id"), "email": user.get("email"), "system_role": user.get("system_role")}
    key["tenant"] = {
        "id": tenant.get("id"),
        "name": tenant.get("name"),
        "plan": plan["code"] if plan else None,
        "subscription_status": tenant.get("subscription_status"),
        "total_keys": len(store.list_api_keys_for_tenant(api_key["tenant_id"])),
    }

    call_stats = store.api_key_call_stats(key_id)
    total = call_stats["total_calls"]
    call_stats["success_rate"] = round(call_stats["success_calls"] / total * 100, 1) if total else 0

    return {"key": key, "stats": call_stats, **store.api_key_call_breakdown(key_id)}


@router.delete("/api-keys/{key_id}")
async def revoke_api_key(
    key_id: str,
    request: Request,
    ctx: SaasContext = Depends(admin_access),
    store: Store = Depends(get_store_dependency),
):
    api_key = store.get_api_key(key_id)
    if api_key is None:
        raise GatewayError(404, "KEY_NOT_FOUND", "API key not found.")
    if api_key["revoked_at"]:
        raise GatewayError(400, "ALREADY_REVOKED", "This API key is already revoked.")

    store.revoke_api_key(key_id)
    _admin_audit(store, request, ctx, "API_KEY_REVOKED", target_user_id=api_key["user_id"], meta={
        "key_id": key_id,
        "key_prefix": api_key["key_prefix"],
        "by_admin": True,
    })
    return {"success": True, "message": "API key revoked successfully."}
