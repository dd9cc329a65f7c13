"""
Public API v1 Routes

Endpoints for programmatic access. All routes authenticate with an API key
(Authorization: Bearer vra_live_... or x-api-key), never with Firebase.

Endpoints:
    POST /api/v1/faces/compare   - 1:1 face verification
    POST /api/v1/faces/search    - 1:N face search
    POST /api/v1/faces/batch     - N:N batch comparison
    POST /api/v1/videos/analyze  - submit a video for processing
    GET  /api/v1/videos/{job_id} - video processing status and results
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

from api.dependencies import api_key_context, usage_enforced
from api.uploads import read_images, read_video
from core.errors import GatewayError
from core.frs_client import (
    FRSError,
    NoFaceDetectedError,
    get_frs_client,
    normalize_bbox,
    normalize_video_status,
)
from core.tenant_context import SaasContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["v1"])

MAX_SEARCH_TARGETS = 20
MAX_BATCH_SET_SIZE = 10


def _v1_usage(feature_column: str, tenant_per_minute: int, is_video: bool = False):
    return usage_enforced(
        feature_column,
        is_video=is_video,
        tenant_per_minute=tenant_per_minute,
        context=api_key_context,
    )


def _validation_error(message: str, field: Optional[str] = None) -> GatewayError:
    if field:
        return GatewayError(400, "VALIDATION_ERROR", message, field=field)
    return GatewayError(400, "VALIDATION_ERROR", message)


def _unexpected_field(field: str) -> GatewayError:
    return GatewayError(
        400, "UNEXPECTED_FIELD",
        f'Unexpected field: "{field}". Check the API documentation for the correct field names.',
    )


def _internal_error() -> GatewayError:
    return GatewayError(500, "INTERNAL_ERROR", "An unexpected error occurred. Please try again later.")


def _search_error(e: FRSError, endpoint: str) -> GatewayError:
    logger.error(f"[v1] {endpoint} error: {e.message}")
    if isinstance(e, NoFaceDetectedError):
        return GatewayError(422, "NO_FACE_DETECTED", e.message)
    return _internal_error()


def _face(face: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    face = face or {}
    return {"bbox": normalize_bbox(face.get("bbox")), "attributes": face.get("attributes") or {}}


def _item(item: Dict[str, Any]) -> Dict[str, Any]:
    face = item.get("face")
    return {
        "index": item["index"],
        "filename": item["filename"],
        "bbox": normalize_bbox(face["bbox"]) if face else None,
    }


# ============================================================
# Faces
# ============================================================

@router.post("/faces/compare")
async def compare_faces(
    source: Optional[UploadFile] = File(None),
    target: Optional[UploadFile] = File(None),
    ctx: SaasContext = Depends(_v1_usage("allow_face_search_one_to_one", 60)),
):
    """Compare the face in `source` with the face in `target`."""
    if source is None:
        raise _validation_error("Source image is required.", "source")
    if target is None:
        raise _validation_error("Target image is required.", "target")

    source_image, target_image = await read_images(ctx, [source, target])
    client = get_frs_client()
    try:
        result = await client.one_to_one(source_image, target_image)
    except FRSError as e:
        raise _search_error(e, "faces/compare")

    return {
        "success": True,
        "data": {
            "match": result["match"],
            "confidence": result["confidence"],
            "threshold": client.match_threshold,
            "source": _face(result["source"]),
            "target": _face(result["target"]),
        },
    }


@router.post("/faces/search")
async def search_faces(
    source: Optional[UploadFile] = File(None),
    targets: Optional[List[UploadFile]] = File(None),
    ctx: SaasContext = Depends(_v1_usage("allow_face_search_one_to_n", 30)),
):
    """Search the source face across up to 20 target images."""
    if source is None:
        raise _validation_error("Source image is required.", "source")
    if not targets:
        raise _validation_error("At least one target image is required.", "targets")
    if len(targets) > MAX_SEARCH_TARGETS:
        raise _unexpected_field("targets")

    images = await read_images(ctx, [source] + list(targets))
    try:
        result = await get_frs_client().one_to_n(images[0], images[1:])
    except FRSError as e:
        raise _search_error(e, "faces/search")

    return {
        "success": True,
        "data": {
            "source": _face(result["source"]),
            "total_targets": result["total_targets"],
            "match_count": result["match_count"],
            "results": [
                {
                    **_item(r),
                    "match": r["match"],
                    "confidence": r["confidence"],
                    "error": r.get("error"),
                }
                for r in result["results"]
            ],
        },
    }


@router.post("/faces/batch")
async def batch_compare(
    set1: Optional[List[UploadFile]] = File(None),
    set2: Optional[List[UploadFile]] = File(None),
    ctx: SaasContext = Depends(_v1_usage("allow_face_search_n_to_n", 10)),
):
    """Compare every image in set1 with every image in set2 (up to 10 each)."""
    if not set1:
        raise _validation_error("At least one image in set1 is required.", "set1")
    if not set2:
        raise _validation_error("At least one image in set2 is required.", "set2")
    if len(set1) > MAX_BATCH_SET_SIZE:
        raise _unexpected_field("set1")
    if len(set2) > MAX_BATCH_SET_SIZE:
        raise _unexpected_field("set2")

    images = await read_images(ctx, list(set1) + list(set2))
    try:
        result = await get_frs_client().n_to_n(images[:len(set1)], images[len(set1):])
    except FRSError as e:
        raise _search_error(e, "faces/batch")

    return {
        "success": True,
        "data": {
            "summary": result["summary"],
            "comparisons": [
                {
                    "source": _item(c["source"]),
                    "target": _item(c["target"]),
                    "match": c["match"],
                    "confidence": c["confidence"],
                    "error": c.get("error"),
                }
                for c in result["comparisons"]
            ],
        },
    }


# ============================================================
# Videos
# ============================================================

@router.post("/videos/analyze", status_code=202)
async def analyze_video(
    file: Optional[UploadFile] = File(None),
    name: Optional[str] = Form(None),
    ctx: SaasContext = Depends(_v1_usage("allow_video_processing", 10, is_video=True)),
):
    """Upload a video and start processing; poll GET /api/v1/videos/{job_id}."""
    if file is None:
        raise _validation_error("Video file is required.", "file")

    video = await read_video(ctx, file)
    try:
        job_id = await get_frs_client().submit_video(video, name=name)
    except FRSError as e:
        logger.error(f"[v1] videos/analyze error: {e.message}")
        if e.status_code == 413:
            raise GatewayError(413, "VIDEO_TOO_LARGE", "Video file is too large.")
        raise _internal_error()

    return {
        "success": True,
        "data": {
            "job_id": job_id,
            "status": "processing",
            "message": "Video submitted for processing. Poll GET /api/v1/videos/{job_id} for status.",
        },
    }


@router.get("/videos/{job_id}")
async def get_video_status(
    job_id: str,
    ctx: SaasContext = Depends(_v1_usage("allow_video_processing", 120)),
):
    """
    Return a video job's status.

    Finished jobs also carry the detected faces and face clusters; if those
    cannot be fetched the status is still returned with empty lists.
    """
    client = get_frs_client()
    try:
        video = await client.get_video(job_id)
    except FRSError as e:
        logger.error(f"[v1] videos/{job_id} error: {e.message}")
        if e.status_code == 404:
            raise GatewayError(404, "VIDEO_NOT_FOUND", f"No video found with jobId: {job_id}")
        raise _internal_error()

    raw_status = video.get("status")
    data: Dict[str, Any] = {
        "job_id": job_id,
        "status": normalize_video_status(raw_status),
        "name": video.get("name"),
        "created_at": video.get("created"),
        "duration": video.get("duration"),
    }

    if (raw_status or "").lower() == "finished":
        try:
            faces, clusters = await asyncio.gather(
                client.get_video_faces(job_id), client.get_video_clusters(job_id)
            )
        except FRSError as e:
            logger.error(f"[v1] Failed to fetch video details for {job_id}: {e.message}")
            data["faces"] = []
            data["clusters"] = []
        else:
            data["faces"] = [
                {
                    "id": f.get("id"),
                    "bbox": f.get("bbox"),
                    "thumbnail": f.get("thumbnail"),
                    "timestamp": f.get("timestamp"),
                    "cluster_id": f.get("cluster"),
                }
                for f in faces
            ]
            data["clusters"] = [
                {
                    "id": c.get("id"),
                    "face_count": c.get("faces_count") or c.get("count"),
                    "thumbnail": c.get("face"),
                }
                for c in clusters
            ]
            data["total_faces"] = len(data["faces"])
            data["total_clusters"] = len(data["clusters"])

    return {"success": True, "data": data}
