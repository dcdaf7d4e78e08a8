"""Blob storage for uploaded files."""

import re
import time
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel

from ..logger import logger

CHECK_KEY = ".storage-check"


class StoredBlob(BaseModel):
    key: str
    path: str
    size: int
    public_url: str


class BlobStore(Protocol):
    def put(self, key: str, data: bytes, content_type: str | None = None) -> StoredBlob: ...

    def get(self, key: str) -> bytes: ...

    def public_url(self, key: str) -> str: ...

    def delete(self, key: str) -> bool: ...


def sanitize_filename(name: str) -> str:
    """Replace anything but letters, digits, dots and dashes with underscores."""
    base = Path(name or "").name
    cleaned = re.sub(r"[^A-Za-z0-9.\-]", "_", base).strip("._")
    return cleaned or "file"


def make_storage_key(filename: str, now_ms: int | None = None) -> str:
    """Build a ``<epoch-ms>-<sanitized-name>`` storage key."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{now_ms}-{sanitize_filename(filename)}"


class LocalBlobStore:
    """Stores blobs as files under a root directory.

    Public URLs point at the HTTP surface's ``/files/{key}`` route.
    """

    def __init__(self, root: str | Path, public_base_url: str = "http://localhost:8000"):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Invalid storage key: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: str | None = None) -> StoredBlob:
        path = self._path(key)
        path.write_bytes(data)
        logger.info("blob stored", key=key, size=len(data), content_type=content_type)
        return StoredBlob(key=key, path=str(path), size=len(data), public_url=self.public_url(key))

    def get(self, key: str) -> bytes:
        """Raises FileNotFoundError when the key does not exist."""
        return self._path(key).read_bytes()

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/files/{key}"

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        logger.info("blob deleted", key=key)
        return True


class StorageCheckReport(BaseModel):
    can_write: bool = False
    can_read: bool = False
    can_delete: bool = False
    public_url: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.can_write and self.can_read and self.can_delete and self.error is None


def check_storage(store: BlobStore) -> StorageCheckReport:
    """Round-trip a check blob through the store and report what worked."""
    report = StorageCheckReport()
    payload = b"storage check"
    try:
        store.put(CHECK_KEY, payload, content_type="text/plain")
        report.can_write = True
        report.can_read = store.get(CHECK_KEY) == payload
        report.public_url = store.public_url(CHECK_KEY)
        report.can_delete = store.delete(CHECK_KEY)
    except Exception as e:
        report.error = str(e)
        logger.error("storage check failed", error=str(e))
    return report
