"""
Image preprocessing: resize to the canonical model resolution and re-encode.
"""

import io
import logging
from typing import Tuple

from PIL import Image

logger = logging.getLogger(__name__)

CANONICAL_SIZE: Tuple[int, int] = (224, 224)


class PreprocessingError(Exception):
    """Raised when an uploaded image cannot be decoded or re-encoded."""


def preprocess_image(image_bytes: bytes,
                     size: Tuple[int, int] = CANONICAL_SIZE,
                     image_format: str = "JPEG") -> bytes:
    """
    Resize an image to `size` (aspect ratio is not preserved) and encode it.

    Args:
        image_bytes: Raw uploaded image.
        size: Target (width, height).
        image_format: Output encoding understood by PIL.

    Returns:
        Encoded image bytes.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            if image.mode != 'RGB':
                image = image.convert('RGB')
            resized = image.resize(size)

        byte_io = io.BytesIO()
        resized.save(byte_io, format=image_format)
        return byte_io.getvalue()
    except Exception as e:
        raise PreprocessingError(f"Could not preprocess image: {e}") from e
