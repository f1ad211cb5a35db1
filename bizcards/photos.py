"""Storage for uploaded employee photos."""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

logger = logging.getLogger("bizcards.photos")

PHOTO_URL_PREFIX = "/uploads/photos/"
MAX_PHOTO_BYTES = 10 * 1024 * 1024
ALLOWED_CONTENT_TYPES = frozenset({"image/jpeg", "image/jpg", "image/pjpeg"})

_JPEG_MAGIC = b"\xff\xd8\xff"


class PhotoError(ValueError):
    """Raised when an upload or file name is rejected."""


class PhotoTooLargeError(PhotoError):
    """Raised when an upload exceeds the configured size limit."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StoredPhoto:
    filename: str
    size: int

    @property
    def photo_url(self) -> str:
        return f"{PHOTO_URL_PREFIX}{self.filename}"

    @property
    def file_size_kb(self) -> int:
        return round(self.size / 1024)


class PhotoLibrary:
    """Saves, describes and deletes JPEG photos in a single directory.

    Stored files are named ``photo-<milliseconds>-<random>.jpg``; callers only
    ever address them by that bare file name.
    """

    def __init__(
        self,
        directory: Path,
        *,
        max_bytes: int = MAX_PHOTO_BYTES,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._directory = directory
        self._max_bytes = max_bytes
        self._now = now or _utcnow

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    def save(self, data: bytes, *, content_type: Optional[str] = None) -> StoredPhoto:
        if not data:
            raise PhotoError("No photo file uploaded")
        if len(data) > self._max_bytes:
            raise PhotoTooLargeError(f"File size exceeds {self._max_bytes // (1024 * 1024)}MB limit")
        if content_type is not None and content_type.lower() not in ALLOWED_CONTENT_TYPES:
            raise PhotoError("Invalid file type. Only JPEG images are allowed.")
        if not data.startswith(_JPEG_MAGIC):
            raise PhotoError("Uploaded file is not a JPEG image")

        self._directory.mkdir(parents=True, exist_ok=True)
        stamp = int(self._now().timestamp() * 1000)
        filename = f"photo-{stamp}-{secrets.token_hex(4)}.jpg"
        with open(self._directory / filename, "xb") as handle:
            handle.write(data)
        logger.info("Stored photo %s (%s bytes)", filename, len(data))
        return StoredPhoto(filename=filename, size=len(data))

    def info(self, filename: str) -> Optional[Dict[str, object]]:
        path = self._path(filename)
        try:
            stats = path.stat()
        except FileNotFoundError:
            return None
        if not path.is_file():
            return None
        return {
            "filename": filename,
            "photo_url": f"{PHOTO_URL_PREFIX}{filename}",
            "file_size_bytes": stats.st_size,
            "file_size_kb": round(stats.st_size / 1024),
            "format": "jpeg" if _is_jpeg(path) else "unknown",
            "modified_at": datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc).isoformat(),
        }

    def delete(self, filename: str) -> bool:
        path = self._path(filename)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Deleted photo %s", filename)
        return True

    def _path(self, filename: str) -> Path:
        if not filename or filename in {".", ".."} or any(part in filename for part in ("..", "/", "\\")):
            raise PhotoError("Invalid filename")
        return self._directory / filename


def _is_jpeg(path: Path) -> bool:
    with open(path, "rb") as handle:
        return handle.read(len(_JPEG_MAGIC)) == _JPEG_MAGIC


__all__ = [
    "PhotoLibrary",
    "StoredPhoto",
    "PhotoError",
    "PhotoTooLargeError",
    "PHOTO_URL_PREFIX",
    "MAX_PHOTO_BYTES",
    "ALLOWED_CONTENT_TYPES",
]
