"""
Account API Routes

This module provides:
- GET /api/me: the caller's user, tenant, role and plan summary
- POST /api/auth/init: first-login provisioning (runs the tenant context)
- POST|DELETE /api/auth/session: httpOnly session cookie management
"""

import logging

from fastapi import APIRouter, Depends, Request, Response

from api.dependencies import get_client_ip, get_saas_context, get_store_dependency, rate_limited
from api.schemas import SessionRequest
from core.audit import audit_log
from core.errors import GatewayError
from core.store import Store
from core.tenant_context import SaasContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["account"])

SESSION_COOKIE = "firebase_token"
SESSION_MAX_AGE = 7 * 24 * 60 * 60


@router.get("/me")
async def get_me(ctx: SaasContext = Depends(rate_limited(60))):
    """Return who the caller is and what their plan allows."""
    user, tenant, plan = ctx.user, ctx.tenant, ctx.plan
    return {
        "user": {
            "id": user["id"],
            "email": user.get("email"),
            "provider": user.get("provider"),
        },
        "tenant": {
            "id": tenant["id"],
            "name": tenant["name"],
            "subscription_status": tenant["subscription_status"],
            "trial_ends_at": tenant.get("trial_ends_at"),
        },
        "role": ctx.role,
        "plan": {
            "code": plan["code"],
            "name": plan["name"],
            "daily_request_limit": plan.get("daily_request_limit"),
            "allow_face_search_one_to_one": plan.get("allow_face_search_one_to_one"),
            "allow_face_search_one_to_n": plan.get("allow_face_search_one_to_n"),
            "allow_face_search_n_to_n": plan.get("allow_face_search_n_to_n"),
        },
    }


@router.post("/auth/init")
async def init_account(
    request: Request,
    ctx: SaasContext = Depends(get_saas_context),
    store: Store = Depends(get_store_dependency),
):
    """
    Called by the frontend right after sign-in.

    Resolving the context provisions the user and tenant on first login.
    """
    audit_log(
        store,
        "LOGIN",
        user_id=ctx.user["id"],
        tenant_id=ctx.tenant["id"],
        ip=get_client_ip(request),
        method=request.method,
        path=request.url.path,
        status=200,
        user_agent=request.headers.get("user-agent"),
    )
    return {
        "success": True,
        "user": {
            "uid": ctx.user["firebase_uid"],
            "email": ctx.user.get("email"),
            "display_name": ctx.user.get("display_name"),
        },
    }


@router.post("/auth/session")
async def create_session(body: SessionRequest, request: Request, response: Response):
    """Store the ID token in an httpOnly cookie for server-rendered pages."""
    if not body.token:
        raise GatewayError(400, "VALIDATION_ERROR", "Missing token")

    response.set_cookie(
        SESSION_COOKIE,
        body.token,
        max_age=SESSION_MAX_AGE,
        httponly=True,
        secure=request.url.scheme == "https",
        samesite="lax",
        path="/",
    )
    return {"success": True}


@router.delete("/auth/session")
async def delete_session(response: Response):
    response.delete_cookie(SESSION_COOKIE, path="/")
    return {"success": True}
