"""
Multipart upload handling.

Uploaded files are read into memory and checked against the global
upload caps (uploads config section) and then the caller's plan caps.
"""

from typing import List, Optional

from fastapi import UploadFile

from core.config import get_uploads_config
from core.errors import GatewayError
from core.frs_client import ImageInput
from core.tenant_context import SaasContext
from core.usage_limits import check_image_sizes

MB = 1024 * 1024

DEFAULT_IMAGE_TYPES = ["image/jpeg", "image/png", "image/webp", "image/gif"]
DEFAULT_VIDEO_TYPES = ["video/mp4", "video/webm", "video/quicktime", "video/x-msvideo"]


def _too_large() -> GatewayError:
    uploads = get_uploads_config()
    return GatewayError(
        413, "FILE_TOO_LARGE",
        f"File size exceeds the allowed limit ({uploads.get('max_image_size_mb', 2)}MB for images, "
        f"{uploads.get('max_video_size_mb', 500)}MB for videos).",
    )


async def read_images(ctx: SaasContext, files: Optional[List[UploadFile]]) -> List[ImageInput]:
    """
    Read and validate uploaded images.

    Raises:
        GatewayError: 400 UPLOAD_ERROR for a disallowed type, 413
            FILE_TOO_LARGE over the global cap, 413 IMAGE_TOO_LARGE over
            the plan cap.
    """
    uploads = get_uploads_config()
    allowed = uploads.get("image_types") or DEFAULT_IMAGE_TYPES
    max_bytes = uploads.get("max_image_size_mb", 2) * MB

    images = []
    for upload in files or []:
        if upload.content_type not in allowed:
            raise GatewayError(
                400, "UPLOAD_ERROR",
                f"Invalid image type: {upload.content_type}. Allowed: JPEG, PNG, WebP, GIF",
            )
        content = await upload.read()
        if len(content) > max_bytes:
            raise _too_large()
        images.append(ImageInput(content, upload.filename or "image", upload.content_type))

    check_image_sizes(ctx, [(image.filename, len(image.content)) for image in images])
    return images


async def read_video(ctx: SaasContext, upload: UploadFile) -> ImageInput:
    """
    Read and validate an uploaded video.

    Raises:
        GatewayError: 400 UPLOAD_ERROR, 413 FILE_TOO_LARGE or 413
            VIDEO_TOO_LARGE (plan cap).
    """
    uploads = get_uploads_config()
    allowed = uploads.get("video_types") or DEFAULT_VIDEO_TYPES
    if upload.content_type not in allowed:
        raise GatewayError(
            400, "UPLOAD_ERROR",
            f"Invalid video type: {upload.content_type}. Allowed: MP4, WebM, MOV, AVI",
        )

    content = await upload.read()
    if len(content) > uploads.get("max_video_size_mb", 500) * MB:
        raise _too_large()

    max_mb = (ctx.plan or {}).get("max_video_size")
    if max_mb and not ctx.is_super_admin and len(content) > max_mb * MB:
        raise GatewayError(
            413, "VIDEO_TOO_LARGE",
            f"Video exceeds your plan limit of {max_mb}MB.",
            max_size_mb=max_mb,
        )

    return ImageInput(content, upload.filename or "video", upload.content_type)


def describe(images: List[ImageInput]) -> List[dict]:
    """Filename/size summary stored as request_data."""
    return [{"filename": image.filename, "size": len(image.content)} for image in images]
