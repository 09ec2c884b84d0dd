"""
Upload Pipeline

received -> normalized -> background_removed -> flipped -> stored -> done

Every stage consumes the previous stage's buffer. A failing stage aborts the
run; nothing is written before the store stage, and a completed store is
never rolled back.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from bgflip.core.config import Settings, settings as default_settings
from bgflip.core.exceptions import BgFlipBaseException, PipelineStageError, ValidationError
from bgflip.core.logging import get_logger, LogContext, image_id_var
from bgflip.core.metrics import track_stage_latency, record_pipeline_run
from bgflip.core.storage import IStorage
from bgflip.modules.images import ImageVariant, generate_image_id, storage_path
from bgflip.pipeline import image_ops

logger = get_logger(__name__)


class PipelineStage(str, Enum):
    """Upload pipeline states."""
    RECEIVED = "received"
    NORMALIZED = "normalized"
    BACKGROUND_REMOVED = "background_removed"
    FLIPPED = "flipped"
    STORED = "stored"
    DONE = "done"


class BackgroundRemover(Protocol):
    async def remove_background(self, png_bytes: bytes) -> bytes: ...


@dataclass
class UploadResult:
    """Outcome of a successful pipeline run."""
    image_id: str
    processed_url: str
    original_url: Optional[str] = None


def validate_upload(
    data: Optional[bytes],
    content_type: Optional[str],
    max_size_bytes: int
):
    """
    Reject an upload before any processing starts.

    Raises:
        ValidationError: no data, non-image MIME type or payload too large
    """
    if not data:
        raise ValidationError("No image file provided")

    if not content_type or not content_type.lower().startswith("image/"):
        raise ValidationError(
            "Please upload an image file.",
            details={"content_type": content_type}
        )

    if len(data) > max_size_bytes:
        raise ValidationError(
            f"Image size ({len(data) / (1024 * 1024):.2f}MB) exceeds maximum allowed size "
            f"({max_size_bytes / (1024 * 1024):.0f}MB).",
            details={"size_bytes": len(data), "max_size_bytes": max_size_bytes}
        )


class UploadPipeline:
    """Runs one upload through normalize, background removal, flip and store."""

    def __init__(
        self,
        storage: IStorage,
        remover: BackgroundRemover,
        settings: Settings = default_settings
    ):
        self.storage = storage
        self.remover = remover
        self.settings = settings

    async def run(
        self,
        data: Optional[bytes],
        content_type: Optional[str],
        filename: Optional[str] = None
    ) -> UploadResult:
        validate_upload(data, content_type, self.settings.MAX_IMAGE_SIZE_BYTES)

        image_id = generate_image_id()
        start = time.time()

        with LogContext(image_id=image_id, stage=PipelineStage.RECEIVED.value) as ctx:
            logger.info(
                "upload_received",
                filename=filename,
                content_type=content_type,
                size=len(data)
            )

            try:
                ctx.set_stage(PipelineStage.NORMALIZED.value)
                png = await self._stage(PipelineStage.NORMALIZED, asyncio.to_thread, image_ops.to_png, data)

                ctx.set_stage(PipelineStage.BACKGROUND_REMOVED.value)
                no_bg = await self._stage(PipelineStage.BACKGROUND_REMOVED, self.remover.remove_background, png)

                ctx.set_stage(PipelineStage.FLIPPED.value)
                flipped = await self._stage(PipelineStage.FLIPPED, asyncio.to_thread, image_ops.flip_horizontal, no_bg)

                ctx.set_stage(PipelineStage.STORED.value)
                result = await self._stage(PipelineStage.STORED, self._store, image_id, png, flipped)
            except BgFlipBaseException:
                record_pipeline_run("failed", time.time() - start)
                raise

            ctx.set_stage(PipelineStage.DONE.value)
            record_pipeline_run("completed", time.time() - start)
            logger.info(
                "upload_completed",
                processed_url=result.processed_url,
                duration_ms=int((time.time() - start) * 1000)
            )
            return result

    async def _stage(self, stage: PipelineStage, func, *args):
        """Run one stage, tagging failures with the stage name."""
        with track_stage_latency(stage.value):
            try:
                return await func(*args)
            except BgFlipBaseException as e:
                e.stage = e.stage or stage.value
                e.image_id = e.image_id or image_id_var.get()
                logger.error("stage_failed", error=e.message, error_type=type(e).__name__)
                raise
            except Exception as e:
                logger.error("stage_failed", error=str(e), error_type=type(e).__name__)
                raise PipelineStageError(str(e) or type(e).__name__, stage=stage.value) from e

    async def _store(self, image_id: str, original_png: bytes, processed_png: bytes) -> UploadResult:
        processed_url = await self.storage.upload(
            processed_png,
            storage_path(image_id, ImageVariant.PROCESSED),
            content_type="image/png"
        )

        original_url = None
        if self.settings.STORE_ORIGINALS:
            original_url = await self.storage.upload(
                original_png,
                storage_path(image_id, ImageVariant.ORIGINAL),
                content_type="image/png"
            )

        return UploadResult(image_id=image_id, processed_url=processed_url, original_url=original_url)
