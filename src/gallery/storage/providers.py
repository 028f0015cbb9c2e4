"""Blob store abstraction with local-filesystem and Google Cloud Storage implementations."""

from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from pathlib import Path
import re
from typing import Any, Optional
import uuid

from gallery.settings import Settings, settings as default_settings


logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class BlobNotFoundError(KeyError):
    """Requested blob key does not exist in the store."""


def build_blob_key(filename: Optional[str]) -> str:
    """Return a unique object key that keeps a sanitized copy of the original filename."""
    base = _SAFE_NAME.sub("-", str(filename or "").strip()).strip("-.") or "upload"
    return f"images/{uuid.uuid4().hex}/{base[:200]}"


class BlobStore(ABC):
    """Abstract blob store contract."""

    backend_name: str

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        """Store bytes under key, replacing any existing object."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return stored bytes or raise BlobNotFoundError."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete key if present."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Return True when key is stored."""


class LocalBlobStore(BlobStore):
    """Blobs stored as files under a root directory."""

    backend_name = "local"

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Blob key escapes storage root: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise BlobNotFoundError(key)
        return path.read_bytes()

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()


class GCSBlobStore(BlobStore):
    """Blobs stored in a Google Cloud Storage bucket."""

    backend_name = "gcs"

    def __init__(self, *, bucket_name: str, project_id: Optional[str] = None, client: Optional[Any] = None):
        if not bucket_name:
            raise ValueError("GCSBlobStore requires a storage bucket name")

        if client is None:
            from google.cloud import storage

            client = storage.Client(project=project_id) if project_id else storage.Client()

        self._bucket = client.bucket(bucket_name)

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        blob = self._bucket.blob(key)
        blob.upload_from_string(data, content_type=content_type or "application/octet-stream")

    def get(self, key: str) -> bytes:
        from google.api_core.exceptions import NotFound

        try:
            return self._bucket.blob(key).download_as_bytes()
        except NotFound as exc:
            raise BlobNotFoundError(key) from exc

    def delete(self, key: str) -> None:
        from google.api_core.exceptions import NotFound

        try:
            self._bucket.blob(key).delete()
        except NotFound:
            logger.debug("Blob %s already absent", key)

    def exists(self, key: str) -> bool:
        return bool(self._bucket.blob(key).exists())


def create_blob_store(source: Settings | None = None) -> BlobStore:
    """Build the configured blob store."""
    s = source or default_settings
    backend = str(s.storage_backend or "local").strip().lower()
    if backend == "local":
        return LocalBlobStore(s.storage_local_root)
    if backend == "gcs":
        return GCSBlobStore(bucket_name=s.storage_bucket_name or "", project_id=s.gcp_project_id)
    raise ValueError(f"Unsupported storage backend: {s.storage_backend}")
