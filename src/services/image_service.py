"""
Resize pipeline for downloads.

Uses Pillow. Resized output is always PNG; untouched downloads keep their
original bytes and sniffed content type.
"""

from __future__ import annotations

import io
import logging
import mimetypes
from dataclasses import dataclass
from typing import Final, Optional

from PIL import Image, UnidentifiedImageError

from src.domain.errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_TYPE: Final = "application/octet-stream"
RESIZED_MEDIA_TYPE: Final = "image/png"
PNG_MODES: Final = frozenset({"1", "L", "LA", "I", "P", "RGB", "RGBA"})
MAX_OUTPUT_PIXELS: Final = Image.MAX_IMAGE_PIXELS or 89_478_485


@dataclass(frozen=True, slots=True)
class RenderedImage:
    content: bytes
    media_type: str


def detect_media_type(data: bytes, filename: str = "") -> str:
    """Best-effort MIME detection; never raises."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            if image.format and image.format in Image.MIME:
                return Image.MIME[image.format]
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError):
        pass
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or DEFAULT_MEDIA_TYPE


def target_size(
    source: tuple[int, int], width: Optional[int], height: Optional[int]
) -> Optional[tuple[int, int]]:
    """
    Compute output dimensions, or None when no resize was asked for.

    A missing (or zero) dimension is derived from the other one so that the
    source aspect ratio is kept. Outputs above MAX_OUTPUT_PIXELS are rejected.
    """
    width = width or 0
    height = height or 0
    if width <= 0 and height <= 0:
        return None
    src_w, src_h = source
    if width <= 0:
        width = max(1, round(src_w * height / src_h))
    elif height <= 0:
        height = max(1, round(src_h * width / src_w))
    if width * height > MAX_OUTPUT_PIXELS:
        raise ValidationError(
            f"Requested size {width}x{height} exceeds {MAX_OUTPUT_PIXELS} pixels",
            code="size_too_large",
        )
    return width, height


def render(
    data: bytes,
    filename: str = "",
    width: Optional[int] = None,
    height: Optional[int] = None,
) -> RenderedImage:
    """Return the bytes to serve for a download request."""
    if not width and not height:
        return RenderedImage(content=data, media_type=detect_media_type(data, filename))

    try:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            size = target_size(image.size, width, height)
            resized = image.resize(size, Image.Resampling.LANCZOS)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise StorageError(f"Cannot open image: {exc}", code="image_unreadable") from exc

    if resized.mode not in PNG_MODES:
        resized = resized.convert("RGBA")
    buffer = io.BytesIO()
    resized.save(buffer, format="PNG")
    logger.info("Resized %s to %dx%d", filename or "image", size[0], size[1])
    return RenderedImage(content=buffer.getvalue(), media_type=RESIZED_MEDIA_TYPE)
