"""
Image Endpoints

POST   /api/upload            - Run an upload through the pipeline
GET    /api/download/{id}     - Download the processed PNG as an attachment
DELETE /api/delete?imageId=   - Delete the processed PNG
GET    /api/images/{id}       - Public URLs of the stored variants
"""

import re
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from bgflip.api.dependencies import get_settings, get_upload_pipeline, get_retrieval_service
from bgflip.core.config import Settings
from bgflip.core.exceptions import ImageNotFoundError, ValidationError
from bgflip.core.logging import get_logger
from bgflip.pipeline.orchestrator import UploadPipeline
from bgflip.pipeline.retrieval import ImageRetrievalService

logger = get_logger(__name__)
router = APIRouter()

_EXTENSION = re.compile(r"\.[^/.]+$")
_UNSAFE_HEADER_CHARS = re.compile(r'["\\\r\n]')


# =============================================================================
# Response Schemas
# =============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UploadResponse(CamelModel):
    """Response from the upload endpoint."""
    success: bool
    image_id: str
    processed_url: str
    message: str


class DeleteResponse(CamelModel):
    success: bool
    message: str


class ImageUrlsResponse(CamelModel):
    """Stored variants of an image; missing variants are null."""
    image_id: str
    original_url: Optional[str] = None
    processed_url: Optional[str] = None


def download_filename(image_id: str, filename: Optional[str] = None) -> str:
    """
    Attachment name for a processed download.

    ``photo.jpg`` becomes ``photo-processed.png`` and a bare extension
    such as ``.bashrc`` becomes ``-processed.png``. Without a name the
    default is ``processed-{id}.png``.
    """
    if filename:
        base_name = _UNSAFE_HEADER_CHARS.sub("", _EXTENSION.sub("", filename))
        return f"{base_name}-processed.png"
    return f"processed-{image_id}.png"


def content_disposition(image_id: str, name: str) -> str:
    if name.isascii():
        return f'attachment; filename="{name}"'
    # Header values are latin-1; send an ASCII fallback plus the RFC 5987 form
    return f"attachment; filename=\"processed-{image_id}.png\"; filename*=UTF-8''{quote(name)}"


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/upload", response_model=UploadResponse)
async def upload_image(
    image: Optional[UploadFile] = File(None),
    pipeline: UploadPipeline = Depends(get_upload_pipeline),
    app_settings: Settings = Depends(get_settings),
):
    """
    Upload an image for processing.

    Flow:
    1. Validate MIME type and size (400 on failure, nothing else runs)
    2. Convert to PNG
    3. Remove the background with Clipdrop
    4. Flip horizontally
    5. Store under processed/{id}.png and return its public URL
    """
    if image is None:
        raise ValidationError("No image file provided")

    # One byte past the limit is enough to reject oversized uploads
    data = await image.read(app_settings.MAX_IMAGE_SIZE_BYTES + 1)
    result = await pipeline.run(data, image.content_type, filename=image.filename)

    return UploadResponse(
        success=True,
        image_id=result.image_id,
        processed_url=result.processed_url,
        message="Image processed successfully",
    )


@router.get("/download/{image_id}")
async def download_image(
    image_id: str,
    filename: Optional[str] = Query(None),
    service: ImageRetrievalService = Depends(get_retrieval_service),
):
    """Stream the processed PNG as an attachment."""
    data = await service.fetch(image_id)
    name = download_filename(image_id, filename)

    logger.info("image_downloaded", image_id=image_id, size=len(data))

    return Response(
        content=data,
        media_type="image/png",
        headers={"Content-Disposition": content_disposition(image_id, name)},
    )


@router.delete("/delete", response_model=DeleteResponse)
async def delete_image(
    image_id: Optional[str] = Query(None, alias="imageId"),
    service: ImageRetrievalService = Depends(get_retrieval_service),
):
    """Delete the processed variant of an image."""
    if not image_id:
        raise ValidationError("Image ID is required")

    if not await service.exists(image_id):
        raise ImageNotFoundError(image_id=image_id)

    await service.remove(image_id)
    return DeleteResponse(success=True, message="Image deleted successfully")


@router.get("/images/{image_id}", response_model=ImageUrlsResponse)
async def get_image(
    image_id: str,
    service: ImageRetrievalService = Depends(get_retrieval_service),
):
    """Public URLs of the original and processed variants."""
    lookup = await service.lookup(image_id)
    return ImageUrlsResponse(
        image_id=lookup.image_id,
        original_url=lookup.original_url,
        processed_url=lookup.processed_url,
    )
