"""Content-addressed cache of search result pages."""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Dict, Optional, Sequence

import numpy as np

from gallery.kvstore import KeyValueStore


logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_query_text(text: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", str(text or "")).strip().lower()


def fingerprint_text(text: str) -> str:
    return hashlib.sha256(normalize_query_text(text).encode("utf-8")).hexdigest()


def fingerprint_image(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def fingerprint_vector(vector: Sequence[float]) -> str:
    return hashlib.sha256(np.asarray(vector, dtype=np.float64).tobytes()).hexdigest()


class SearchCache:
    """Result pages keyed by query fingerprint plus pagination."""

    def __init__(self, store: KeyValueStore, ttl: int, prefix: str = "search:"):
        self.store = store
        self.ttl = int(ttl)
        self.prefix = prefix

    def key(self, kind: str, fingerprint: str, page: int, page_size: int) -> str:
        return f"{self.prefix}{kind}:{fingerprint}:p{int(page)}:s{int(page_size)}"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        value = self.store.get(key)
        if value is not None and not isinstance(value, dict):
            logger.warning("Ignoring malformed cache entry %s", key)
            return None
        return value

    def put(self, key: str, payload: Dict[str, Any]) -> None:
        self.store.set(key, payload, self.ttl)
