"""
Image Transforms

PNG normalization and horizontal mirroring with Pillow. All work is on
in-memory buffers.
"""

import io
from typing import Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from bgflip.core.exceptions import ImageDecodeError


def _open(image_bytes: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageDecodeError(f"Could not decode image: {e}")
    return image


def _save_png(image: Image.Image) -> bytes:
    # PNG has no CMYK or YCbCr mode
    if image.mode not in ("1", "L", "LA", "I", "I;16", "P", "RGB", "RGBA"):
        image = image.convert("RGBA")
    output_buffer = io.BytesIO()
    image.save(output_buffer, format="PNG")
    return output_buffer.getvalue()


def to_png(image_bytes: bytes) -> bytes:
    """Re-encode any Pillow-readable image as PNG."""
    return _save_png(_open(image_bytes))


def flip_horizontal(image_bytes: bytes) -> bytes:
    """Mirror an image left-to-right and encode it as PNG."""
    return _save_png(ImageOps.mirror(_open(image_bytes)))


def image_size(image_bytes: bytes) -> Tuple[int, int]:
    """(width, height) of an encoded image."""
    return _open(image_bytes).size
