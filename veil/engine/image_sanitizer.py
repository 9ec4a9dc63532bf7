"""
VEIL - Image metadata stripping

Photos straight from a phone carry EXIF, often including the exact GPS fix
the rest of the pipeline works to hide. Before an image is persisted it is
re-encoded with Pillow, which writes no EXIF unless asked to. Payloads Pillow
cannot decode are kept unchanged; decompression bombs are rejected.
"""

import base64
import io
import logging
from typing import Tuple

from PIL import Image, UnidentifiedImageError

from engine.errors import InvalidSubmissionError

logger = logging.getLogger("veil.sanitizer")

KEEP_FORMATS = {"JPEG", "PNG", "WEBP"}


def strip_image_metadata(image_bytes: bytes) -> Tuple[bytes, str]:
    """Returns (clean_bytes, mime_type)."""
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except Image.DecompressionBombError as e:
        logger.warning(f"[SANITIZE] Rejected oversized image: {e}")
        raise InvalidSubmissionError(f"Image dimensions too large: {e}", field="image")
    except (UnidentifiedImageError, OSError) as e:
        logger.info(f"[SANITIZE] Not a decodable image ({e}); stored as-is")
        return image_bytes, "application/octet-stream"

    fmt = img.format if img.format in KEEP_FORMATS else "PNG"
    if fmt == "JPEG" and img.mode not in ("RGB", "L", "CMYK"):
        img = img.convert("RGB")
    img.info.pop("exif", None)

    buf = io.BytesIO()
    if fmt == "JPEG":
        img.save(buf, format=fmt, quality=95)
    else:
        img.save(buf, format=fmt)

    logger.info(f"[SANITIZE] Re-encoded {fmt}: {len(image_bytes):,} → {buf.tell():,} bytes")
    return buf.getvalue(), f"image/{fmt.lower()}"


def to_data_url(image_bytes: bytes) -> str:
    clean, mime = strip_image_metadata(image_bytes)
    return f"data:{mime};base64,{base64.b64encode(clean).decode('ascii')}"
