"""Image downscaling for API requests and share-link thumbnails."""

import base64
import io
import logging
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from .errors import ImageDecodeError

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIDE = 1024
DEFAULT_QUALITY = 70
THUMBNAIL_MAX_SIDE = 120
THUMBNAIL_QUALITY = 40


def target_size(width: int, height: int, max_side: int) -> tuple[int, int]:
    """Scale (width, height) so the longest side is at most max_side."""
    longest = max(width, height)
    if longest <= max_side:
        return width, height
    scale = max_side / longest
    return max(1, round(width * scale)), max(1, round(height * scale))


def _read_bytes(source: bytes | Path | str) -> bytes:
    if isinstance(source, bytes):
        return source
    return Path(source).read_bytes()


def compress_to_jpeg(
    source: bytes | Path | str,
    max_side: int = DEFAULT_MAX_SIDE,
    quality: int = DEFAULT_QUALITY,
) -> bytes:
    """Decode an image, shrink it to fit max_side and re-encode as JPEG.

    Transparent areas are flattened onto white.
    """
    data = _read_bytes(source)
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            width, height = target_size(img.width, img.height, max_side)

            rgba = img.convert("RGBA")
            if (width, height) != rgba.size:
                rgba = rgba.resize((width, height), Image.Resampling.LANCZOS)

            canvas = Image.new("RGB", (width, height), (255, 255, 255))
            canvas.paste(rgba, mask=rgba.getchannel("A"))
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageDecodeError(f"Could not decode image: {e}") from e

    out = io.BytesIO()
    canvas.save(out, format="JPEG", quality=quality)
    encoded = out.getvalue()
    logger.debug("Compressed image %d -> %d bytes (%dx%d)", len(data), len(encoded), width, height)
    return encoded


def compress_image(
    source: bytes | Path | str,
    max_side: int = DEFAULT_MAX_SIDE,
    quality: int = DEFAULT_QUALITY,
) -> str:
    """Compress an image for an inference request. Returns base64 JPEG text."""
    return base64.b64encode(compress_to_jpeg(source, max_side, quality)).decode("ascii")


def create_thumbnail(
    source: bytes | Path | str,
    max_side: int = THUMBNAIL_MAX_SIDE,
    quality: int = THUMBNAIL_QUALITY,
) -> str:
    """Create a tiny base64 JPEG preview for share links.

    Thumbnails are optional, so any failure yields ''.
    """
    try:
        return compress_image(source, max_side, quality)
    except (ImageDecodeError, OSError) as e:
        logger.debug("Thumbnail skipped: %s", e)
        return ""
