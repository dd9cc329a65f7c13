"""
Face Search API Routes (dashboard)

This module provides:
- POST /api/face-search/one-to-one: verify a source face against a target
- POST /api/face-search/one-to-n: search one face in up to 50 targets
- POST /api/face-search/n-to-n: compare two sets of up to 20 images
- Stored request history: list, get, delete, store-result

Every search result is stored as a face_search_request so that it can be
revisited or shared; stored results expire after the retention period.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, UploadFile

from api.dependencies import get_store_dependency, rate_limited, usage_enforced
from api.schemas import StoreResultRequest
from api.uploads import describe, read_images
from core.config import get_storage_config
from core.errors import GatewayError
from core.frs_client import FRSError, NoFaceDetectedError, get_frs_client
from core.store import REQUEST_TYPES, Store
from core.tenant_context import SaasContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/face-search", tags=["face-search"])

MAX_ONE_TO_N_TARGETS = 50
MAX_N_TO_N_SET_SIZE = 20


def _retention_days() -> int:
    return get_storage_config().get("result_retention_days", 30)


def _too_many(field: str, maximum: int) -> GatewayError:
    return GatewayError(400, "UPLOAD_ERROR", f"Too many files in {field}. Maximum is {maximum}.")


def _search_error(e: FRSError) -> GatewayError:
    if isinstance(e, NoFaceDetectedError):
        return GatewayError(422, "NO_FACE_DETECTED", e.message)
    logger.error(f"Face search failed: {e.message}")
    return GatewayError(500, "INTERNAL_ERROR", "Face search failed. Please try again.")


def _save(
    store: Store,
    ctx: SaasContext,
    request_type: str,
    request_data: Dict[str, Any],
    result: Dict[str, Any],
) -> Dict[str, Any]:
    row = store.create_face_search_request(
        tenant_id=ctx.tenant["id"],
        user_id=ctx.user["id"],
        request_type=request_type,
        request_data=request_data,
        result_data=result,
        retention_days=_retention_days(),
    )
    logger.info(f"Stored {request_type} request {row['id']} for tenant {ctx.tenant['id']}")
    return {
        "id": row["id"],
        **result,
        "created_at": row["created_at"],
        "expires_at": row["expires_at"],
    }


# ============================================================
# Searches
# ============================================================

@router.post("/one-to-one")
async def one_to_one(
    source: Optional[UploadFile] = File(None),
    target: Optional[UploadFile] = File(None),
    ctx: SaasContext = Depends(usage_enforced("allow_face_search_one_to_one", tenant_per_minute=60)),
    store: Store = Depends(get_store_dependency),
):
    """1:1 verification of two images."""
    if source is None or target is None:
        raise GatewayError(400, "VALIDATION_ERROR", "Both source and target images are required")

    source_image, target_image = await read_images(ctx, [source, target])
    try:
        result = await get_frs_client().one_to_one(source_image, target_image)
    except FRSError as e:
        raise _search_error(e)

    request_data = {"source": describe([source_image])[0], "target": describe([target_image])[0]}
    return _save(store, ctx, "ONE_TO_ONE", request_data, result)


@router.post("/one-to-n")
async def one_to_n(
    source: Optional[UploadFile] = File(None),
    targets: Optional[List[UploadFile]] = File(None),
    ctx: SaasContext = Depends(usage_enforced("allow_face_search_one_to_n", tenant_per_minute=30)),
    store: Store = Depends(get_store_dependency),
):
    """1:N search of one source face across the target images."""
    if source is None:
        raise GatewayError(400, "VALIDATION_ERROR", "Source image is required")
    if not targets:
        raise GatewayError(400, "VALIDATION_ERROR", "At least one target image is required")
    if len(targets) > MAX_ONE_TO_N_TARGETS:
        raise _too_many("targets", MAX_ONE_TO_N_TARGETS)

    images = await read_images(ctx, [source] + list(targets))
    source_image, target_images = images[0], images[1:]
    try:
        result = await get_frs_client().one_to_n(source_image, target_images)
    except FRSError as e:
        raise _search_error(e)

    request_data = {"source": describe([source_image])[0], "targets": describe(target_images)}
    return _save(store, ctx, "ONE_TO_N", request_data, result)


@router.post("/n-to-n")
async def n_to_n(
    set1: Optional[List[UploadFile]] = File(None),
    set2: Optional[List[UploadFile]] = File(None),
    ctx: SaasContext = Depends(usage_enforced("allow_face_search_n_to_n", tenant_per_minute=10)),
    store: Store = Depends(get_store_dependency),
):
    """N:N comparison of every image in set1 against every image in set2."""
    if not set1:
        raise GatewayError(400, "VALIDATION_ERROR", "Set 1 requires at least one image")
    if not set2:
        raise GatewayError(400, "VALIDATION_ERROR", "Set 2 requires at least one image")
    if len(set1) > MAX_N_TO_N_SET_SIZE:
        raise _too_many("set1", MAX_N_TO_N_SET_SIZE)
    if len(set2) > MAX_N_TO_N_SET_SIZE:
        raise _too_many("set2", MAX_N_TO_N_SET_SIZE)

    images = await read_images(ctx, list(set1) + list(set2))
    set1_images, set2_images = images[:len(set1)], images[len(set1):]
    try:
        result = await get_frs_client().n_to_n(set1_images, set2_images)
    except FRSError as e:
        raise _search_error(e)

    request_data = {"set1": describe(set1_images), "set2": describe(set2_images)}
    return _save(store, ctx, "N_TO_N", request_data, result)


# ============================================================
# Stored requests
# ============================================================

@router.get("/requests")
async def list_requests(
    type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    sort: str = "desc",
    ctx: SaasContext = Depends(rate_limited(120)),
    store: Store = Depends(get_store_dependency),
):
    """
    List the caller's stored requests (tenant ADMINs see the whole tenant).

    Result payloads are omitted; fetch a single request for those.
    """
    limit = max(1, min(limit, 100))
    offset = max(offset, 0)
    rows, total = store.list_face_search_requests(
        tenant_id=ctx.tenant["id"],
        user_id=ctx.user["id"],
        role=ctx.role,
        request_type=type,
        limit=limit,
        offset=offset,
        sort=sort,
    )
    return {
        "requests": rows,
        "pagination": {"total": total, "limit": limit, "offset": offset},
    }


@router.get("/requests/{request_id}")
async def get_request(
    request_id: str,
    ctx: SaasContext = Depends(rate_limited(120)),
    store: Store = Depends(get_store_dependency),
):
    row = store.get_face_search_request(
        request_id, tenant_id=ctx.tenant["id"], user_id=ctx.user["id"], role=ctx.role
    )
    if row is None:
        raise GatewayError(404, "NOT_FOUND", "Request not found")
    return row


@router.delete("/requests/{request_id}")
async def delete_request(
    request_id: str,
    ctx: SaasContext = Depends(rate_limited(60)),
    store: Store = Depends(get_store_dependency),
):
    row = store.get_face_search_request(
        request_id, tenant_id=ctx.tenant["id"], user_id=ctx.user["id"], role=ctx.role
    )
    if row is None:
        raise GatewayError(404, "NOT_FOUND", "Request not found")

    store.delete_face_search_request(request_id)
    return {"success": True, "message": "Request deleted"}


@router.post("/store-result")
async def store_result(
    body: StoreResultRequest,
    ctx: SaasContext = Depends(rate_limited(60)),
    store: Store = Depends(get_store_dependency),
):
    """Persist a result computed client-side so it can be shared later."""
    if not body.type or body.request_data is None or body.result_data is None:
        raise GatewayError(
            400, "VALIDATION_ERROR", "type, request_data, and result_data are required"
        )
    request_type = body.type.upper()
    if request_type not in REQUEST_TYPES:
        raise GatewayError(400, "VALIDATION_ERROR", "Invalid type")

    row = store.create_face_search_request(
        tenant_id=ctx.tenant["id"],
        user_id=ctx.user["id"],
        request_type=request_type,
        request_data=body.request_data,
        result_data=body.result_data,
        retention_days=_retention_days(),
    )
    return {"id": row["id"], "created_at": row["created_at"], "expires_at": row["expires_at"]}
