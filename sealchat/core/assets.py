from __future__ import annotations

import base64
import binascii
import logging
import re
import uuid
from pathlib import Path

from .errors import ValidationError

log = logging.getLogger("sealchat.core.assets")

_DATA_URL = re.compile(r"data:(?P<mime>image/[a-z0-9.+-]+);base64,(?P<data>.+)", re.DOTALL)

EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
}


class LocalAssetStore:
    """Stores inline images on disk and hands back a URL for the message row.

    The URL is the only thing the message pipeline keeps; it never reads the
    file back.
    """

    def __init__(self, root: Path | str, base_url: str, *, max_bytes: int = 5 * 1024 * 1024) -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.max_bytes = max_bytes

    def upload(self, data_url: str) -> str:
        match = _DATA_URL.fullmatch(data_url.strip()) if isinstance(data_url, str) else None
        if not match:
            raise ValidationError("image must be a base64 data URL")
        ext = EXTENSIONS.get(match["mime"])
        if ext is None:
            raise ValidationError(f"unsupported image type {match['mime']}")
        try:
            data = base64.b64decode(match["data"], validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError("image payload is not valid base64") from None
        if not data:
            raise ValidationError("image payload is empty")
        if len(data) > self.max_bytes:
            raise ValidationError(f"image exceeds {self.max_bytes} bytes")

        name = f"{uuid.uuid4().hex}.{ext}"
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / name).write_bytes(data)
        log.info("Stored image %s (%d bytes)", name, len(data))
        return f"{self.base_url}/{name}"

    def discard(self, url: str) -> bool:
        """Remove a file written by ``upload``; anything outside ``base_url`` is left alone."""
        prefix = f"{self.base_url}/"
        if not url.startswith(prefix):
            return False
        name = url[len(prefix):]
        if not name or "/" in name or name.startswith("."):
            return False
        path = self.root / name
        if not path.is_file():
            return False
        path.unlink()
        log.info("Discarded image %s", name)
        return True


__all__ = ["LocalAssetStore", "EXTENSIONS"]
