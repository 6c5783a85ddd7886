"""Tests for image helpers"""
import base64
import io

import pytest
from PIL import Image

from receipt_ledger.images import detect_file_type, image_to_base64, load_image


@pytest.mark.parametrize("file_bytes, filename, content_type, expected", [
    (b"", "x", "image/png", "image"),
    (b"", "x", "application/pdf", "pdf"),
    (b"", "receipt.JPG", None, "image"),
    (b"", "scan.pdf", "application/octet-stream", "pdf"),
    (b"%PDF-1.4", "upload", None, "pdf"),
    (b"\x89PNG\r\n\x1a\n", "upload", None, "image"),
    (b"\xff\xd8\xff\xe0", "upload", None, "image"),
    (b"GIF89a", "upload", None, "image"),
    (b"RIFF\x00\x00\x00\x00WEBPVP8 ", "upload", None, "image"),
    (b"hello", "notes.txt", "text/plain", "unknown"),
])
def test_detect_file_type(file_bytes, filename, content_type, expected):
    """Test file type detection"""
    assert detect_file_type(file_bytes, filename, content_type) == expected


def test_load_image(sample_image_bytes):
    image = load_image(sample_image_bytes)

    assert image.size == (4, 4)


def test_load_image_invalid():
    with pytest.raises(ValueError, match="Unreadable image"):
        load_image(b"not an image")


def test_image_to_base64(sample_image_bytes):
    """Test image to base64 conversion"""
    encoded = image_to_base64(load_image(sample_image_bytes))

    assert isinstance(encoded, str)
    assert base64.b64decode(encoded).startswith(b"\x89PNG")


def test_image_to_base64_converts_palette_images():
    encoded = image_to_base64(Image.new("P", (2, 2)))
    decoded = Image.open(io.BytesIO(base64.b64decode(encoded)))

    assert decoded.mode == "RGBA"
