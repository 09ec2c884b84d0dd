"""
Images Module

Identifiers, variants and storage paths of image artifacts.
"""

from bgflip.modules.images.models import ImageVariant, generate_image_id, storage_path

__all__ = ["ImageVariant", "generate_image_id", "storage_path"]
