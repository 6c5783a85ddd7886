"""Image helpers for preparing uploads for vision models"""
import base64
import io
from typing import Optional

from PIL import Image, UnidentifiedImageError


SUPPORTED_CONTENT_TYPES = {
    "image/png",
    "image/jpeg",
    "image/jpg",
    "image/gif",
    "image/webp",
}


def detect_file_type(file_bytes: bytes, filename: str, content_type: Optional[str] = None) -> str:
    """Detect if file is an image, a PDF or something else"""
    if content_type in SUPPORTED_CONTENT_TYPES:
        return 'image'
    if content_type == 'application/pdf':
        return 'pdf'

    name = (filename or "").lower()
    if name.endswith(('.png', '.jpg', '.jpeg', '.gif', '.webp')):
        return 'image'
    if name.endswith('.pdf'):
        return 'pdf'

    # Check magic bytes
    if file_bytes.startswith(b'%PDF'):
        return 'pdf'
    if file_bytes.startswith((b'\x89PNG', b'\xff\xd8\xff', b'GIF8')):
        return 'image'
    if file_bytes[:4] == b'RIFF' and file_bytes[8:12] == b'WEBP':
        return 'image'
    return 'unknown'


def load_image(image_bytes: bytes) -> Image.Image:
    """Open uploaded bytes as a PIL Image"""
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Unreadable image: {e}")
    return image


def image_to_base64(image: Image.Image) -> str:
    """Convert PIL Image to base64 PNG string"""
    if image.mode not in ("RGB", "RGBA", "L"):
        image = image.convert("RGBA")
    buffered = io.BytesIO()
    image.save(buffered, format="PNG")
    return base64.b64encode(buffered.getvalue()).decode("utf-8")
