"""
FRS Proxy Routes

Thin authenticated pass-through to the recognition service for the
dashboard's interactive tools. Upstream failures surface as 502.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, UploadFile

from api.dependencies import rate_limited
from api.uploads import read_images
from core.errors import GatewayError
from core.frs_client import FRSError, get_frs_client, normalize_bbox
from core.tenant_context import SaasContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/frs", tags=["frs"])


def _upstream_error(message: str, e: FRSError) -> GatewayError:
    logger.warning(f"{message}: {e.message}")
    return GatewayError(502, "FRS_ERROR", message, detail=e.detail or e.message)


@router.post("/detect")
async def detect(
    photo: Optional[UploadFile] = File(None),
    ctx: SaasContext = Depends(rate_limited(60)),
):
    """Detect faces in one photo; bboxes are normalized to left/top/right/bottom."""
    if photo is None:
        raise GatewayError(400, "VALIDATION_ERROR", "No photo uploaded")

    images = await read_images(ctx, [photo])
    try:
        result = await get_frs_client().detect_faces(images[0])
    except FRSError as e:
        raise _upstream_error("Face detection failed", e)

    for face in (result.get("objects") or {}).get("face") or []:
        face["bbox"] = normalize_bbox(face.get("bbox"))
    return result


@router.get("/verify")
async def verify(
    object1: Optional[str] = None,
    object2: Optional[str] = None,
    ctx: SaasContext = Depends(rate_limited(60)),
):
    """Compare two previously detected face references."""
    if not object1 or not object2:
        raise GatewayError(400, "VALIDATION_ERROR", "Both object1 and object2 are required")

    try:
        return await get_frs_client().verify_raw(object1, object2)
    except FRSError as e:
        raise _upstream_error("Face verification failed", e)
