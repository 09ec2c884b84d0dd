"""
Retrieval and Deletion of stored artifacts by identifier.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from bgflip.core.exceptions import ImageNotFoundError, ValidationError
from bgflip.core.logging import get_logger
from bgflip.core.storage import IStorage
from bgflip.modules.images import ImageVariant, storage_path

logger = get_logger(__name__)


@dataclass
class ImageLookup:
    image_id: str
    original_url: Optional[str] = None
    processed_url: Optional[str] = None


class ImageRetrievalService:
    """Lookup, download and removal of image variants."""

    def __init__(self, storage: IStorage):
        self.storage = storage

    @staticmethod
    def _check_id(image_id: Optional[str]) -> str:
        if not image_id or not image_id.strip():
            raise ValidationError("Image ID is required")
        if "/" in image_id or ".." in image_id:
            raise ValidationError("Invalid image ID")
        return image_id

    async def exists(self, image_id: str, variant: ImageVariant = ImageVariant.PROCESSED) -> bool:
        return await self.storage.exists(storage_path(self._check_id(image_id), variant))

    async def lookup(self, image_id: str) -> ImageLookup:
        """
        Public URLs of the stored variants of an image.

        Raises:
            ImageNotFoundError: neither variant is stored
        """
        image_id = self._check_id(image_id)
        original_path = storage_path(image_id, ImageVariant.ORIGINAL)
        processed_path = storage_path(image_id, ImageVariant.PROCESSED)

        original_exists, processed_exists = await asyncio.gather(
            self.storage.exists(original_path),
            self.storage.exists(processed_path),
        )

        if not original_exists and not processed_exists:
            raise ImageNotFoundError(image_id=image_id)

        return ImageLookup(
            image_id=image_id,
            original_url=self.storage.public_url(original_path) if original_exists else None,
            processed_url=self.storage.public_url(processed_path) if processed_exists else None,
        )

    async def fetch(self, image_id: str, variant: ImageVariant = ImageVariant.PROCESSED) -> bytes:
        """Stored bytes of a variant. Raises ImageNotFoundError if absent."""
        image_id = self._check_id(image_id)
        path = storage_path(image_id, variant)
        if not await self.storage.exists(path):
            raise ImageNotFoundError(image_id=image_id)
        return await self.storage.download(path)

    async def remove(self, image_id: str):
        """Delete the processed variant. A missing blob is not an error."""
        image_id = self._check_id(image_id)
        await self.storage.delete(storage_path(image_id, ImageVariant.PROCESSED))
        logger.info("image_removed", image_id=image_id)
