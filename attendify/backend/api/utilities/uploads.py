from typing import Tuple
from fastapi import HTTPException, UploadFile, status

from ...config.config import settings

ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp"}

async def read_image(upload: UploadFile) -> Tuple[bytes, str]:
    """Reads an uploaded capture, refusing unsupported types (415), oversized (413) and empty files."""
    content_type = (upload.content_type or "").lower()
    if content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported image type '{content_type}'. Use one of: {', '.join(sorted(ALLOWED_IMAGE_TYPES))}."
        )
    image_bytes = await upload.read(settings.MAX_IMAGE_BYTES + 1)
    if len(image_bytes) > settings.MAX_IMAGE_BYTES:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Image is too large.")
    if not image_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Image is empty.")
    return image_bytes, content_type
