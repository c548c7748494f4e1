from __future__ import annotations

import io
import logging
import os
import re
import uuid
from typing import Any, Dict, Optional

from PIL import Image, UnidentifiedImageError

from cdss import config

logger = logging.getLogger(__name__)

_UPLOADS_DIR = config.UPLOADS_DIR
_MAX_BYTES = config.MAX_UPLOAD_MB * 1024 * 1024

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "application/pdf": ".pdf",
}
_PRESET_RE = re.compile(r"[^a-z0-9_-]+")


class UploadTooLarge(ValueError):
    pass


def configure(*, uploads_dir: Optional[str] = None, max_upload_mb: Optional[int] = None) -> None:
    global _UPLOADS_DIR, _MAX_BYTES
    if uploads_dir:
        _UPLOADS_DIR = uploads_dir
    if max_upload_mb is not None:
        _MAX_BYTES = int(max_upload_mb) * 1024 * 1024


def uploads_dir() -> str:
    os.makedirs(_UPLOADS_DIR, exist_ok=True)
    return _UPLOADS_DIR


def _clean_preset(preset: Optional[str]) -> str:
    cleaned = _PRESET_RE.sub("_", (preset or "medical_image").strip().lower()).strip("_")
    return cleaned or "medical_image"


def _sniff_image(data: bytes) -> Optional[str]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = (img.format or "").lower()
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError):
        return None
    return "jpeg" if fmt == "jpg" else fmt


def save_upload(
    filename: Optional[str],
    content_type: Optional[str],
    data: Optional[bytes],
    session_id: Optional[str] = None,
    preset: str = "medical_image",
) -> Dict[str, Any]:
    if not data:
        raise ValueError("No file provided")
    if len(data) > _MAX_BYTES:
        raise UploadTooLarge("File too large")

    ctype = (content_type or "").split(";")[0].strip().lower()
    if ctype not in config.ALLOWED_UPLOAD_TYPES:
        raise ValueError("Unsupported file type")

    if ctype == "application/pdf":
        if not data.startswith(b"%PDF"):
            raise ValueError("Unsupported file type")
        fmt = "pdf"
    else:
        fmt = _sniff_image(data)
        if fmt is None or f"image/{fmt}" not in config.ALLOWED_UPLOAD_TYPES:
            raise ValueError("Unsupported file type")
        ctype = f"image/{fmt}"

    folder = _clean_preset(preset)
    public_id = f"{folder}/{uuid.uuid4().hex}"
    target_dir = os.path.join(uploads_dir(), folder)
    os.makedirs(target_dir, exist_ok=True)
    path = os.path.join(uploads_dir(), public_id + _EXTENSIONS[ctype])
    with open(path, "wb") as f:
        f.write(data)

    logger.info(
        "upload stored name=%s public_id=%s bytes=%d session=%s",
        filename or "unnamed",
        public_id,
        len(data),
        session_id or "-",
    )
    return {
        "url": f"/uploads/{public_id}{_EXTENSIONS[ctype]}",
        "publicId": public_id,
        "format": fmt,
        "bytes": len(data),
    }
