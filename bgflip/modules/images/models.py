"""
Image Artifact Model

An artifact has no metadata record: its identity and existence are derived
from deterministic storage paths, one per (identifier, variant).
"""

import uuid
from enum import Enum


class ImageVariant(str, Enum):
    """Stored variants of an image artifact."""
    ORIGINAL = "original"
    PROCESSED = "processed"

    @property
    def folder(self) -> str:
        return "originals" if self is ImageVariant.ORIGINAL else "processed"


def generate_image_id() -> str:
    """New random artifact identifier (UUID4)."""
    return str(uuid.uuid4())


def storage_path(image_id: str, variant: ImageVariant) -> str:
    """Storage path of a variant, e.g. processed/{id}.png"""
    return f"{variant.folder}/{image_id}.png"
