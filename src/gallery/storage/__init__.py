"""Blob store abstractions."""

from .providers import (
    BlobNotFoundError,
    BlobStore,
    GCSBlobStore,
    LocalBlobStore,
    build_blob_key,
    create_blob_store,
)

__all__ = [
    "BlobNotFoundError",
    "BlobStore",
    "GCSBlobStore",
    "LocalBlobStore",
    "build_blob_key",
    "create_blob_store",
]
