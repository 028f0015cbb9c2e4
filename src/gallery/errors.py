"""Error taxonomy for the embedding and search core."""

from __future__ import annotations

from typing import Optional


class GalleryError(Exception):
    """Base class for all gallery domain errors."""


class ProviderError(GalleryError):
    """Embedding/caption provider failed (bad request, auth, malformed reply, exhausted retries)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class ProviderTimeoutError(GalleryError, TimeoutError):
    """Provider call exceeded its hard deadline. Not a ProviderError."""


class DimensionMismatchError(GalleryError):
    """Vector length does not match the configured embedding dimension."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Embedding dimension mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class InvalidEmbeddingError(GalleryError):
    """Vector contains non-finite components."""


class NotFoundError(GalleryError):
    """Referenced image record does not exist."""

    def __init__(self, record_id):
        super().__init__(f"Image record {record_id} not found")
        self.record_id = record_id


class EmptyQueryError(GalleryError):
    """Search query text or image bytes are blank."""


class RateLimitExceededError(GalleryError):
    """Client exceeded the search request budget for the current window."""

    def __init__(self, client_id: str, limit: int, retry_after: int):
        super().__init__(f"Too many requests from {client_id}: limit is {limit} per window")
        self.client_id = client_id
        self.limit = limit
        self.retry_after = retry_after


class UploadRejectedError(GalleryError):
    """Uploaded file failed basic validation."""
