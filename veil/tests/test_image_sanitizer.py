"""
VEIL - Image metadata stripping tests
"""

import base64
import io
import os
import sys

import pytest
from PIL import Image

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.errors import InvalidSubmissionError
from engine.image_sanitizer import strip_image_metadata, to_data_url


def _jpeg_with_exif() -> bytes:
    exif = Image.Exif()
    exif[0x010F] = "VeilCam"          # Make
    exif[0x0132] = "2024:03:15 08:32:11"  # DateTime
    img = Image.new("RGB", (32, 32), color=(10, 120, 40))
    buf = io.BytesIO()
    img.save(buf, format="JPEG", exif=exif.tobytes())
    return buf.getvalue()


class TestStrip:

    def test_exif_removed(self):
        raw = _jpeg_with_exif()
        assert len(Image.open(io.BytesIO(raw)).getexif()) > 0

        clean, mime = strip_image_metadata(raw)
        assert mime == "image/jpeg"
        assert len(Image.open(io.BytesIO(clean)).getexif()) == 0

    def test_png_keeps_format(self):
        buf = io.BytesIO()
        Image.new("RGBA", (8, 8)).save(buf, format="PNG")
        clean, mime = strip_image_metadata(buf.getvalue())
        assert mime == "image/png"
        assert Image.open(io.BytesIO(clean)).size == (8, 8)

    def test_decompression_bomb_rejected(self, monkeypatch):
        buf = io.BytesIO()
        Image.new("L", (64, 64)).save(buf, format="PNG")
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
        with pytest.raises(InvalidSubmissionError):
            strip_image_metadata(buf.getvalue())

    def test_non_image_passthrough(self):
        clean, mime = strip_image_metadata(b"IMG1")
        assert clean == b"IMG1"
        assert mime == "application/octet-stream"


class TestDataUrl:

    def test_prefix_and_payload(self):
        url = to_data_url(b"IMG1")
        assert url == "data:application/octet-stream;base64," + base64.b64encode(b"IMG1").decode()

    def test_image_url(self):
        assert to_data_url(_jpeg_with_exif()).startswith("data:image/jpeg;base64,")
