"""
Request dependencies shared by the route modules.

Authentication chain for dashboard routes:
    verify_auth -> get_saas_context -> rate_limited(...) -> usage_enforced(...)

Public v1 routes swap the first two for api_key_context. Every dependency
that resolves a caller stores the SaasContext on request.state so the
audit middleware can record the request after the response is sent.
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, Request, Response

from core.api_keys import authenticate_api_key, extract_api_key
from core.config import get_rate_limits_config
from core.errors import GatewayError
from core.identity import AuthInfo, verify_id_token
from core.rate_limits import RateLimitPolicy, enforce_rate_limits
from core.redis_client import get_redis
from core.share_tokens import parse_authorization_header
from core.store import Store, get_store
from core.tenant_context import SaasContext, resolve_tenant_context
from core.usage_limits import enforce_usage

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For entry, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client is not None:
        return request.client.host
    return "0.0.0.0"


def get_store_dependency() -> Store:
    return get_store()


# =============================================================================
# Authentication
# =============================================================================

def verify_auth(request: Request) -> AuthInfo:
    """Verify the Firebase bearer token (or apply the dev bypass)."""
    token = parse_authorization_header(request.headers.get("authorization"))
    auth = verify_id_token(token)
    request.state.auth = auth
    return auth


def get_saas_context(
    request: Request,
    auth: AuthInfo = Depends(verify_auth),
    store: Store = Depends(get_store_dependency),
) -> SaasContext:
    """Resolve user, tenant, role and plan for a Firebase-authenticated caller."""
    ctx = resolve_tenant_context(
        store,
        get_redis(),
        auth,
        client_ip=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        signup_limit=get_rate_limits_config().get("signup_per_day", 5),
    )
    request.state.saas = ctx
    return ctx


def api_key_context(
    request: Request,
    store: Store = Depends(get_store_dependency),
) -> SaasContext:
    """Resolve the caller from an API key (Authorization: Bearer vra_... or x-api-key)."""
    raw_key = extract_api_key(
        request.headers.get("authorization"),
        request.headers.get("x-api-key"),
    )
    ctx = authenticate_api_key(store, raw_key)
    request.state.saas = ctx
    request.state.api_key = ctx.api_key
    return ctx


# =============================================================================
# RBAC
# =============================================================================

def require_admin(ctx: SaasContext = Depends(get_saas_context)) -> SaasContext:
    if ctx.user.get("system_role") not in ("SUPER_ADMIN", "ADMIN"):
        raise GatewayError(403, "forbidden", "Admin access required")
    return ctx


def require_super_admin(ctx: SaasContext = Depends(get_saas_context)) -> SaasContext:
    if ctx.user.get("system_role") != "SUPER_ADMIN":
        raise GatewayError(403, "forbidden", "Super-admin access required")
    return ctx


# =============================================================================
# Limits
# =============================================================================

def rate_limited(
    tenant_per_minute: int,
    context: Callable[..., SaasContext] = get_saas_context,
) -> Callable[..., SaasContext]:
    """
    Build a dependency applying the IP, burst and per-tenant windows.

    Args:
        tenant_per_minute: Per-tenant limit for the route.
        context: Dependency resolving the caller.
    """
    def dependency(request: Request, ctx: SaasContext = Depends(context)) -> SaasContext:
        enforce_rate_limits(
            get_redis(),
            get_client_ip(request),
            RateLimitPolicy.from_config(tenant_per_minute),
            tenant_id=ctx.tenant["id"],
        )
        return ctx

    return dependency


def usage_enforced(
    feature_column: Optional[str] = None,
    is_video: bool = False,
    tenant_per_minute: int = 60,
    context: Callable[..., SaasContext] = get_saas_context,
) -> Callable[..., SaasContext]:
    """
    Build a dependency that rate-limits, then runs the usage chain.

    Soft daily-limit warnings are copied onto the response headers.
    """
    limited = rate_limited(tenant_per_minute, context)

    def dependency(response: Response, ctx: SaasContext = Depends(limited)) -> SaasContext:
        headers = enforce_usage(ctx, get_redis(), feature_column=feature_column, is_video=is_video)
        for name, value in headers.items():
            response.headers[name] = value
        return ctx

    return dependency
