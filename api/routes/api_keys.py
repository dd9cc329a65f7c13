"""
API Key Routes (tenant self-service)

This module provides:
- POST /api/api-keys: create a key (raw key shown once, plan key limits apply)
- GET /api/api-keys: list the tenant's keys, masked
- GET /api/api-keys/{id}/reveal: decrypt and return a key
- DELETE /api/api-keys/{id}: revoke a key
"""

import logging

from cryptography.exceptions import InvalidTag
from fastapi import APIRouter, Depends, Request

from api.dependencies import get_client_ip, get_store_dependency, rate_limited
from api.schemas import ApiKeyCreateRequest
from core.api_keys import (
    InvalidExpiry,
    decrypt_key,
    encrypt_key,
    generate_api_key,
    get_max_keys,
    hash_key,
    key_prefix,
    key_status,
    mask_key,
    parse_expiry,
)
from core.audit import audit_log
from core.errors import GatewayError
from core.store import Store
from core.tenant_context import SaasContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/api-keys", tags=["api-keys"])

DEFAULT_EXPIRY = "90d"
MAX_NAME_LENGTH = 100


def _limit_message(plan: dict, max_keys: int) -> str:
    plan_label = "Free plan" if plan["code"] == "FREE" else f"{plan['name']} plan"
    hint = "Upgrade to Pro for up to 5 keys." if plan["code"] == "FREE" else "Revoke unused keys or upgrade your plan."
    return f"Your {plan_label} allows {max_keys} active API key{'s' if max_keys != 1 else ''}. {hint}"


def _audit(store: Store, request: Request, ctx: SaasContext, action: str, status: int, meta: dict) -> None:
    audit_log(
        store,
        action,
        user_id=ctx.user["id"],
        tenant_id=ctx.tenant["id"],
        ip=get_client_ip(request),
        method=request.method,
        path=request.url.path,
        status=status,
        user_agent=request.headers.get("user-agent"),
        meta=meta,
    )


@router.post("", status_code=201)
async def create_key(
    body: ApiKeyCreateRequest,
    request: Request,
    ctx: SaasContext = Depends(rate_limited(20)),
    store: Store = Depends(get_store_dependency),
):
    """Create a new API key for the caller's tenant."""
    name = (body.name or "").strip()
    if not name:
        raise GatewayError(400, "VALIDATION_ERROR", "Key name is required.", field="name")
    if len(name) > MAX_NAME_LENGTH:
        raise GatewayError(
            400, "VALIDATION_ERROR", "Key name must be 100 characters or less.", field="name"
        )

    max_keys = get_max_keys(ctx.plan)
    active = store.count_active_api_keys(ctx.tenant["id"])
    if active >= max_keys:
        raise GatewayError(
            403, "KEY_LIMIT_REACHED",
            _limit_message(ctx.plan, max_keys),
            limit=max_keys,
            current=active,
            plan_code=ctx.plan["code"],
        )

    try:
        expires_at = parse_expiry(body.expiry or body.expires_at or DEFAULT_EXPIRY)
    except InvalidExpiry:
        raise GatewayError(
            400, "VALIDATION_ERROR",
            "Invalid expiry. Use 30d, 90d, 180d, 365d, never, or a future ISO date.",
            field="expiry",
        )

    raw_key = generate_api_key()
    api_key = store.create_api_key(
        tenant_id=ctx.tenant["id"],
        user_id=ctx.user["id"],
        name=name,
        key_prefix=key_prefix(raw_key),
        key_hash=hash_key(raw_key),
        encrypted_key=encrypt_key(raw_key),
        scopes=body.scopes,
        expires_at=expires_at,
    )

    _audit(store, request, ctx, "API_KEY_CREATED", 201, {
        "key_id": api_key["id"],
        "key_name": name,
        "key_prefix": api_key["key_prefix"],
    })
    logger.info(f"API key {api_key['key_prefix']} created for tenant {ctx.tenant['id']}")

    return {
        "success": True,
        "data": {
            "id": api_key["id"],
            "key": raw_key,
            "name": api_key["name"],
            "key_prefix": api_key["key_prefix"],
            "scopes": api_key["scopes"],
            "expires_at": api_key["expires_at"],
            "created_at": api_key["created_at"],
        },
        "meta": {"keys_used": active + 1, "keys_limit": max_keys},
    }


@router.get("")
async def list_keys(
    ctx: SaasContext = Depends(rate_limited(60)),
    store: Store = Depends(get_store_dependency),
):
    """List the tenant's keys; raw keys are never included."""
    keys = store.list_api_keys_for_tenant(ctx.tenant["id"])
    data = []
    for key in keys:
        status = key_status(key)
        data.append({
            "id": key["id"],
            "name": key["name"],
            "key_prefix": key["key_prefix"],
            "masked_key": mask_key(key["key_prefix"]),
            "scopes": key["scopes"],
            "last_used_at": key["last_used_at"],
            "expires_at": key["expires_at"],
            "revoked_at": key["revoked_at"],
            "is_active": status == "active",
            "is_expired": status == "expired",
            "created_at": key["created_at"],
            "created_by": key.get("user_email") or key.get("user_username"),
        })

    return {
        "success": True,
        "data": data,
        "meta": {
            "keys_used": sum(1 for k in keys if not k["revoked_at"]),
            "keys_limit": get_max_keys(ctx.plan),
            "plan_code": ctx.plan["code"],
        },
    }


@router.get("/{key_id}/reveal")
async def reveal_key(
    key_id: str,
    ctx: SaasContext = Depends(rate_limited(20)),
    store: Store = Depends(get_store_dependency),
):
    """Decrypt a stored key so the owner can copy it again."""
    api_key = store.get_api_key(key_id, tenant_id=ctx.tenant["id"])
    if api_key is None:
        raise GatewayError(404, "KEY_NOT_FOUND", "API key not found.")
    if api_key["revoked_at"]:
        raise GatewayError(400, "KEY_REVOKED", "Revoked keys cannot be revealed.")
    if not api_key.get("encrypted_key"):
        raise GatewayError(
            400, "NO_ENCRYPTED_KEY",
            "This key was created before reveal was supported. Revoke it and create a new one.",
        )

    try:
        raw_key = decrypt_key(api_key["encrypted_key"])
    except (InvalidTag, ValueError) as e:
        logger.error(f"Failed to decrypt API key {key_id}: {e!r}")
        raise GatewayError(500, "DECRYPTION_FAILED", "Could not decrypt the API key.")

    return {"success": True, "data": {"key": raw_key}}


@router.delete("/{key_id}")
async def revoke_key(
    key_id: str,
    request: Request,
    ctx: SaasContext = Depends(rate_limited(20)),
    store: Store = Depends(get_store_dependency),
):
    api_key = store.get_api_key(key_id, tenant_id=ctx.tenant["id"])
    if api_key is None:
        raise GatewayError(404, "KEY_NOT_FOUND", "API key not found.")
    if api_key["revoked_at"]:
        raise GatewayError(400, "ALREADY_REVOKED", "This API key is already revoked.")

    store.revoke_api_key(key_id)
    _audit(store, request, ctx, "API_KEY_REVOKED", 200, {
        "key_id": key_id,
        "key_name": api_key["name"],
        "key_prefix": api_key["key_prefix"],
    })
    logger.info(f"API key {api_key['key_prefix']} revoked for tenant {ctx.tenant['id']}")
    return {"success": True, "message": "API key revoked successfully."}

