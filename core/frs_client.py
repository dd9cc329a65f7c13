"""
FRS Client Module

Async client for the upstream Face Recognition Service (FRS) and its
video / events APIs. The FRS base URL and token never leave the server.

Operations:
    - detect_faces: detect faces in one image
    - verify_faces: compare two detected faces
    - one_to_one: detect in both images, then verify
    - one_to_n: one source against many targets (concurrent)
    - n_to_n: every pair across two sets (concurrent)
    - video API: create, upload, process, status, faces, clusters

Usage:
    from core.frs_client import get_frs_client

    client = get_frs_client()
    result = await client.one_to_one(source, target)
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from core.config import get_frs_config

logger = logging.getLogger(__name__)


MATCH_THRESHOLD = 0.72

VIDEO_STATUS_MAP = {
    "created": "pending",
    "queued": "processing",
    "processing": "processing",
    "finished": "completed",
    "failed": "failed",
}


class FRSError(Exception):
    """
    Upstream FRS failure.

    Attributes:
        status_code: Upstream HTTP status, if the service answered.
        detail: Upstream response body, if any.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail


class NoFaceDetectedError(FRSError):
    """Raised when a required image contains no face."""


@dataclass
class ImageInput:
    """An uploaded image ready to forward upstream."""
    content: bytes
    filename: str
    content_type: str = "image/jpeg"


# =============================================================================
# Helpers
# =============================================================================

def normalize_bbox(bbox: Any) -> Optional[Dict[str, Any]]:
    """
    Normalize a bbox to {left, top, right, bottom}.

    Accepts [l, t, r, b], {left, ...} or {x, y, w, h}; anything else is
    returned unchanged.
    """
    if not bbox:
        return None
    if isinstance(bbox, (list, tuple)) and len(bbox) >= 4:
        left, top, right, bottom = bbox[:4]
        return {"left": left, "top": top, "right": right, "bottom": bottom}
    if isinstance(bbox, dict):
        if "left" in bbox:
            return bbox
        if all(k in bbox for k in ("x", "y", "w", "h")):
            return {
                "left": bbox["x"],
                "top": bbox["y"],
                "right": bbox["x"] + bbox["w"],
                "bottom": bbox["y"] + bbox["h"],
            }
    return bbox


def normalize_video_status(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    return VIDEO_STATUS_MAP.get(raw.lower(), raw)


def format_face_id(face_id: str) -> str:
    if face_id.startswith("detection:") or face_id.startswith("faceevent:"):
        return face_id
    return f"detection:{face_id}"


def _first_face(detection: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    faces = ((detection or {}).get("objects") or {}).get("face") or []
    return faces[0] if faces else None


def _face_summary(face: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "face_id": face.get("id"),
        "bbox": face.get("bbox"),
        "attributes": face.get("attributes"),
    }


def _by_confidence(item: Dict[str, Any]) -> float:
    return item.get("confidence") or 0


# =============================================================================
# Client
# =============================================================================

class FRSClient:
    """
    HTTP client for FRS.

    Attributes:
        base_url: FRS API root.
        video_base_url: Video archive API root.
        events_base_url: Face events / clusters API root.
        match_threshold: Confidence at or above which a pair is a match.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str = "",
        timeout: float = 30.0,
        video_base_url: Optional[str] = None,
        events_base_url: Optional[str] = None,
        video_upload_timeout: float = 300.0,
        match_threshold: float = MATCH_THRESHOLD,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.video_base_url = (video_base_url or base_url).rstrip("/")
        self.events_base_url = (events_base_url or base_url).rstrip("/")
        self.timeout = timeout
        self.video_upload_timeout = video_upload_timeout
        self.match_threshold = match_threshold

        self._client = httpx.AsyncClient(
            headers={"Authorization": f"Token {api_token}"},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text
            raise FRSError(
                f"FRS returned {e.response.status_code}",
                status_code=e.response.status_code,
                detail=detail,
            ) from e
        except httpx.HTTPError as e:
            raise FRSError(f"FRS request failed: {e}") from e

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    def _is_match(self, confidence: Optional[float]) -> bool:
        return confidence is not None and confidence >= self.match_threshold

    # -------------------------------------------------------------------------
    # Detection / verification
    # -------------------------------------------------------------------------

    async def detect_faces(self, image: ImageInput) -> Dict[str, Any]:
        """POST /detect with the image as multipart field "photo"."""
        return await self._request(
            "POST",
            f"{self.base_url}/detect",
            files={"photo": (image.filename, image.content, image.content_type)},
            data={"attributes": json.dumps({"face": {}})},
        )

    async def verify_faces(self, face_id1: str, face_id2: str) -> Dict[str, Any]:
        """GET /verify for two face IDs."""
        return await self._request(
            "GET",
            f"{self.base_url}/verify",
            params={"object1": format_face_id(face_id1), "object2": format_face_id(face_id2)},
        )

    async def verify_raw(self, object1: str, object2: str) -> Dict[str, Any]:
        """GET /verify with caller-supplied object references."""
        return await self._request(
            "GET", f"{self.base_url}/verify", params={"object1": object1, "object2": object2}
        )

    async def one_to_one(self, source: ImageInput, target: ImageInput) -> Dict[str, Any]:
        """
        1:1 verification.

        Raises:
            NoFaceDetectedError: If either image has no face.
            FRSError: On upstream failure.
        """
        source_detection, target_detection = await asyncio.gather(
            self.detect_faces(source), self.detect_faces(target)
        )
        source_face = _first_face(source_detection)
        target_face = _first_face(target_detection)

        if not source_face or not source_face.get("id"):
            raise NoFaceDetectedError("No face detected in source image")
        if not target_face or not target_face.get("id"):
            raise NoFaceDetectedError("No face detected in target image")

        verification = await self.verify_faces(source_face["id"], target_face["id"])
        confidence = verification.get("confidence")

        return {
            "source": _face_summary(source_face),
            "target": _face_summary(target_face),
            "verification": verification,
            "confidence": confidence,
            "match": self._is_match(confidence),
        }

    async def _detect_item(self, image: ImageInput, index: int, set_number: Optional[int] = None) -> Dict[str, Any]:
        item: Dict[str, Any] = {"index": index, "filename": image.filename}
        if set_number is not None:
            item["set_number"] = set_number
        try:
            face = _first_face(await self.detect_faces(image))
        except FRSError as e:
            item.update(face=None, error=e.message)
            return item
        item["face"] = _face_summary(face) if face else None
        item["error"] = None if face else "No face detected"
        return item

    async def _verify_item(self, source_face_id: str, item: Dict[str, Any], target_face_id: str) -> Dict[str, Any]:
        try:
            verification = await self.verify_faces(source_face_id, target_face_id)
        except FRSError as e:
            return {**item, "verification": None, "confidence": None, "match": False, "error": e.message}
        confidence = verification.get("confidence")
        return {
            **item,
            "verification": verification,
            "confidence": confidence,
            "match": self._is_match(confidence),
        }

    async def one_to_n(self, source: ImageInput, targets: List[ImageInput]) -> Dict[str, Any]:
        """
        1:N search of one source face against many targets.

        Per-target failures are captured in the target's "error" field.

        Raises:
            NoFaceDetectedError: If the source has no face.
        """
        source_face = _first_face(await self.detect_faces(source))
        if not source_face or not source_face.get("id"):
            raise NoFaceDetectedError("No face detected in source image")

        detections = await asyncio.gather(
            *(self._detect_item(target, index) for index, target in enumerate(targets))
        )

        async def verify(item: Dict[str, Any]) -> Dict[str, Any]:
            if not item["face"]:
                return {**item, "verification": None, "confidence": None, "match": False}
            return await self._verify_item(source_face["id"], item, item["face"]["face_id"])

        results = list(await asyncio.gather(*(verify(item) for item in detections)))
        results.sort(key=_by_confidence, reverse=True)

        return {
            "source": _face_summary(source_face),
            "results": results,
            "total_targets": len(targets),
            "match_count": sum(1 for r in results if r["match"]),
        }

    async def n_to_n(self, set1: List[ImageInput], set2: List[ImageInput]) -> Dict[str, Any]:
        """N:N comparison of every image in set1 against every image in set2."""
        set1_detections, set2_detections = await asyncio.gather(
            asyncio.gather(*(self._detect_item(img, i, 1) for i, img in enumerate(set1))),
            asyncio.gather(*(self._detect_item(img, i, 2) for i, img in enumerate(set2))),
        )

        async def compare(s1: Dict[str, Any], s2: Dict[str, Any]) -> Dict[str, Any]:
            pair = {"source": s1, "target": s2}
            if not s1["face"] or not s2["face"]:
                return {
                    **pair,
                    "verification": None,
                    "confidence": None,
                    "match": False,
                    "error": s2["error"] if s1["face"] else s1["error"],
                }
            return await self._verify_item(s1["face"]["face_id"], pair, s2["face"]["face_id"])

        comparisons = list(await asyncio.gather(
            *(compare(s1, s2) for s1 in set1_detections for s2 in set2_detections)
        ))
        comparisons.sort(key=_by_confidence, reverse=True)

        matches = sum(1 for c in comparisons if c["match"])
        errors = sum(1 for c in comparisons if c.get("error"))
        return {
            "set1": list(set1_detections),
            "set2": list(set2_detections),
            "comparisons": comparisons,
            "summary": {
                "total_comparisons": len(comparisons),
                "matches": matches,
                "non_matches": len(comparisons) - matches - errors,
                "errors": errors,
            },
        }

    # -------------------------------------------------------------------------
    # Video API
    # -------------------------------------------------------------------------

    async def create_video(self, name: str) -> Dict[str, Any]:
        return await self._request("POST", f"{self.video_base_url}/videos/", json={"name": name})

    async def upload_video_source(self, video_id: Any, video: ImageInput) -> Dict[str, Any]:
        return await self._request(
            "PUT",
            f"{self.video_base_url}/videos/{video_id}/upload/source_file/",
            files={"file": (video.filename, video.content, video.content_type)},
            timeout=self.video_upload_timeout,
        )

    async def start_video_processing(self, video_id: Any) -> Dict[str, Any]:
        return await self._request("POST", f"{self.video_base_url}/videos/{video_id}/process/", json={})

    async def get_video(self, video_id: Any) -> Dict[str, Any]:
        return await self._request("GET", f"{self.video_base_url}/videos/{video_id}/")

    async def get_video_faces(self, video_id: Any, limit: int = 500) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET",
            f"{self.events_base_url}/events/faces/",
            params={"video_archive": video_id, "limit": limit, "ordering": "-id"},
        )
        return data.get("results", []) if isinstance(data, dict) else data

    async def get_video_clusters(self, video_id: Any) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET", f"{self.events_base_url}/clusters/faces/", params={"video_archive": video_id}
        )
        return data.get("results", []) if isinstance(data, dict) else data

    async def submit_video(self, video: ImageInput, name: Optional[str] = None) -> str:
        """Create, upload and start processing a video; returns the job ID."""
        created = await self.create_video(name or video.filename or "API Upload")
        video_id = created.get("id")
        if video_id is None:
            raise FRSError("Video API did not return an id", detail=created)
        await self.upload_video_source(video_id, video)
        await self.start_video_processing(video_id)
        logger.info(f"Video {video_id} submitted for processing")
        return str(video_id)


# =============================================================================
# Singleton
# =============================================================================

_frs_client: Optional[FRSClient] = None


def get_frs_client() -> FRSClient:
    """Get or create the global FRS client from the frs config section."""
    global _frs_client
    if _frs_client is None:
        frs_config = get_frs_config()
        _frs_client = FRSClient(
            base_url=frs_config.get("base_url", "http://localhost:8001"),
            api_token=frs_config.get("api_token", ""),
            timeout=frs_config.get("timeout_sec", 30),
            video_base_url=frs_config.get("video_base_url"),
            events_base_url=frs_config.get("events_base_url"),
            video_upload_timeout=frs_config.get("video_upload_timeout_sec", 300),
            match_threshold=frs_config.get("match_threshold", MATCH_THRESHOLD),
        )
    return _frs_client


def set_frs_client(client: Optional[FRSClient]) -> None:
    """Replace the global client (used by tests)."""
    global _frs_client
    _frs_client = client
