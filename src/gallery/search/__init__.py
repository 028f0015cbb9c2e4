"""Similarity search engine and its result cache."""

from .cache import SearchCache, fingerprint_image, fingerprint_text, fingerprint_vector, normalize_query_text
from .engine import (
    SEARCH_UNAVAILABLE_ADVISORY,
    ImageRecordRef,
    PageInfo,
    SearchEngine,
    SearchResponse,
)

__all__ = [
    "SEARCH_UNAVAILABLE_ADVISORY",
    "ImageRecordRef",
    "PageInfo",
    "SearchCache",
    "SearchEngine",
    "SearchResponse",
    "fingerprint_image",
    "fingerprint_text",
    "fingerprint_vector",
    "normalize_query_text",
]
