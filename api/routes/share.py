"""
Share Token Routes

This module provides:
- POST /api/share: issue a share token (and curl command) for a stored result
- GET /api/result: public retrieval of a shared result by bearer token
- GET /api/share/tokens, DELETE /api/share/tokens/{id}: manage issued tokens

Only the SHA-256 hash of a token is stored; the raw token is returned once.
"""

import logging

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_store_dependency, rate_limited
from api.schemas import ShareRequest
from core.config import get_api_config, get_share_tokens_config
from core.errors import GatewayError
from core.share_tokens import (
    TOKEN_EXPIRY_HOURS,
    generate_curl_command,
    generate_share_token,
    parse_authorization_header,
    validate_and_get_result,
)
from core.store import Store, to_db_time
from core.tenant_context import SaasContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["share"])


def _public_base_url(request: Request) -> str:
    configured = get_api_config().get("public_url")
    if configured:
        return configured
    return str(request.base_url).rstrip("/")


@router.post("/share")
async def create_share(
    body: ShareRequest,
    request: Request,
    ctx: SaasContext = Depends(rate_limited(30)),
    store: Store = Depends(get_store_dependency),
):
    """Issue a share token for one of the caller's stored requests."""
    if not body.request_id:
        raise GatewayError(400, "VALIDATION_ERROR", "request_id is required")

    face_search_request = store.get_face_search_request(
        body.request_id, tenant_id=ctx.tenant["id"], user_id=ctx.user["id"], role=ctx.role
    )
    if face_search_request is None:
        raise GatewayError(404, "NOT_FOUND", "Request not found")

    expiry_hours = get_share_tokens_config().get("expiry_hours", TOKEN_EXPIRY_HOURS)
    issued = generate_share_token(
        request_id=face_search_request["id"],
        user_id=ctx.user["id"],
        tenant_id=ctx.tenant["id"],
        api_type=face_search_request["type"],
        expiry_hours=expiry_hours,
    )
    share_token = store.create_share_token(
        tenant_id=ctx.tenant["id"],
        user_id=ctx.user["id"],
        face_search_request_id=face_search_request["id"],
        token_hash=issued["token_hash"],
        api_type=face_search_request["type"],
        expires_at=issued["expires_at"],
    )

    logger.info(f"Share token {share_token['id']} issued for request {face_search_request['id']}")
    return {
        "id": share_token["id"],
        "token": issued["token"],
        "curl": generate_curl_command(issued["token"], _public_base_url(request)),
        "expires_at": to_db_time(issued["expires_at"]),
        "expires_in_hours": expiry_hours,
    }


@router.get("/result")
async def get_shared_result(request: Request, store: Store = Depends(get_store_dependency)):
    """Public endpoint: return the result a share token points to."""
    token = parse_authorization_header(request.headers.get("authorization"))
    if not token:
        raise GatewayError(401, "UNAUTHORIZED", "Authorization token required")

    validation = validate_and_get_result(token, store)
    if not validation["valid"]:
        if validation.get("expired"):
            raise GatewayError(401, "TOKEN_EXPIRED", "Token expired")
        raise GatewayError(401, "INVALID_TOKEN", validation["error"])

    face_search_request = validation["face_search_request"]
    if face_search_request is None:
        raise GatewayError(404, "NOT_FOUND", "Result no longer available")

    return {
        "id": face_search_request["id"],
        "type": face_search_request["type"],
        "status": face_search_request["status"],
        "result": face_search_request["result_data"],
        "created_at": face_search_request["created_at"],
        "expires_at": face_search_request["expires_at"],
    }


@router.get("/share/tokens")
async def list_tokens(
    ctx: SaasContext = Depends(rate_limited(60)),
    store: Store = Depends(get_store_dependency),
):
    tokens = store.list_share_tokens(ctx.tenant["id"], ctx.user["id"], ctx.role)
    return {"tokens": tokens}


@router.delete("/share/tokens/{token_id}")
async def revoke_token(
    token_id: str,
    ctx: SaasContext = Depends(rate_limited(60)),
    store: Store = Depends(get_store_dependency),
):
    share_token = store.get_visible_share_token(token_id, ctx.tenant["id"], ctx.user["id"], ctx.role)
    if share_token is None:
        raise GatewayError(404, "NOT_FOUND", "Token not found")

    store.delete_share_token(token_id)
    return {"success": True, "message": "Token revoked"}
