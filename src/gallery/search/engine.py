"""Similarity search over stored image embeddings."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gallery.config import GalleryConfig
from gallery.embeddings import EmbeddingProvider
from gallery.errors import (
    DimensionMismatchError,
    EmptyQueryError,
    InvalidEmbeddingError,
    NotFoundError,
    ProviderError,
    ProviderTimeoutError,
)
from gallery.metadata import ImageRecord
from gallery.ratelimit import RateLimiter
from gallery.search.cache import (
    SearchCache,
    fingerprint_image,
    fingerprint_text,
    fingerprint_vector,
    normalize_query_text,
)
from gallery.vector_store import Neighbor, VectorStore


logger = logging.getLogger(__name__)

SEARCH_UNAVAILABLE_ADVISORY = "Search is temporarily unavailable. Please try again in a moment."


@dataclass(frozen=True)
class ImageRecordRef:
    id: int
    name: Optional[str]
    description: Optional[str]
    distance: float


@dataclass(frozen=True)
class PageInfo:
    page: int
    page_size: int
    has_next: bool
    total: int


@dataclass
class SearchResponse:
    results: List[ImageRecordRef] = field(default_factory=list)
    page_info: Optional[PageInfo] = None
    degraded: bool = False
    advisory: Optional[str] = None
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [asdict(ref) for ref in self.results],
            "page_info": asdict(self.page_info) if self.page_info else None,
            "degraded": self.degraded,
            "advisory": self.advisory,
            "cached": self.cached,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], *, cached: bool = False) -> "SearchResponse":
        page_info = payload.get("page_info")
        return cls(
            results=[ImageRecordRef(**ref) for ref in payload.get("results") or []],
            page_info=PageInfo(**page_info) if page_info else None,
            degraded=bool(payload.get("degraded")),
            advisory=payload.get("advisory"),
            cached=cached,
        )

    @classmethod
    def degraded_response(cls, page_info: Optional[PageInfo] = None) -> "SearchResponse":
        return cls(results=[], page_info=page_info, degraded=True, advisory=SEARCH_UNAVAILABLE_ADVISORY)


class SearchEngine:
    """Resolve a query to a vector, rank stored embeddings, and page the result.

    Per query: validate input, count it against the caller's rate budget,
    serve from cache when possible, otherwise resolve the vector, query the
    vector store, hydrate and cache the page. Provider and storage failures
    become a degraded response instead of an exception; degraded responses
    are never cached.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        provider: EmbeddingProvider,
        cache: SearchCache,
        rate_limiter: Optional[RateLimiter],
        config: GalleryConfig,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.config = config

    # -- Entry points -------------------------------------------------------

    def search_by_text(self, query: Optional[str], page: int = 1, client_id: Optional[str] = None) -> SearchResponse:
        normalized = normalize_query_text(query)
        if not normalized:
            raise EmptyQueryError("Search query is blank")
        return self._search(
            "text",
            fingerprint_text(normalized),
            lambda: self.provider.embed_text(normalized),
            page,
            client_id,
        )

    def search_by_image(self, data: Optional[bytes], page: int = 1, client_id: Optional[str] = None) -> SearchResponse:
        if not data:
            raise EmptyQueryError("Search image is empty")
        return self._search(
            "image",
            fingerprint_image(data),
            lambda: self.provider.embed_image(data),
            page,
            client_id,
        )

    def search_by_vector(
        self,
        vector: Optional[Sequence[float]],
        page: int = 1,
        client_id: Optional[str] = None,
    ) -> SearchResponse:
        if vector is None or len(vector) == 0:
            raise EmptyQueryError("Search vector is empty")
        if len(vector) != self.config.embedding_dimension:
            raise DimensionMismatchError(self.config.embedding_dimension, len(vector))
        values = [float(value) for value in vector]
        return self._search("vector", fingerprint_vector(values), lambda: values, page, client_id)

    def similar_to(self, record_id: int, limit: Optional[int] = None, client_id: Optional[str] = None) -> SearchResponse:
        """Records nearest to record_id's stored embedding, excluding record_id itself."""
        self._check_rate(client_id)
        safe_limit = int(limit) if limit else self.config.similar_default_limit
        try:
            with self.session_factory() as db:
                store = VectorStore(db, self.config)
                try:
                    vector = store.get_embedding(record_id)
                except NotFoundError:
                    return SearchResponse()
                if not vector:
                    return SearchResponse()
                neighbors = store.nearest_neighbors(vector, safe_limit, exclude_id=record_id)
                return SearchResponse(results=self._hydrate(db, neighbors))
        except (SQLAlchemyError, DimensionMismatchError, InvalidEmbeddingError) as exc:
            logger.error("Similar-records lookup for %s failed: %s", record_id, exc)
            return SearchResponse.degraded_response()

    # -- Internals ----------------------------------------------------------

    def _check_rate(self, client_id: Optional[str]) -> None:
        if self.rate_limiter is not None and client_id is not None:
            self.rate_limiter.hit(client_id)

    def _search(
        self,
        kind: str,
        fingerprint: str,
        resolve_vector: Callable[[], Sequence[float]],
        page: int,
        client_id: Optional[str],
    ) -> SearchResponse:
        page = max(1, int(page or 1))
        page_size = self.config.page_size

        self._check_rate(client_id)

        cache_key = self.cache.key(kind, fingerprint, page, page_size)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return SearchResponse.from_dict(cached, cached=True)

        try:
            vector = resolve_vector()
        except ProviderTimeoutError as exc:
            logger.warning("Search %s query timed out resolving vector: %s", kind, exc)
            return SearchResponse.degraded_response()
        except ProviderError as exc:
            logger.error("Search %s query failed resolving vector: %s", kind, exc)
            return SearchResponse.degraded_response()

        try:
            with self.session_factory() as db:
                store = VectorStore(db, self.config)
                neighbors = store.nearest_neighbors(
                    vector,
                    page_size + 1,
                    offset=(page - 1) * page_size,
                )
                has_next = len(neighbors) > page_size
                results = self._hydrate(db, neighbors[:page_size])
                total = store.count_embedded()
        except (DimensionMismatchError, InvalidEmbeddingError) as exc:
            logger.error("Search %s query produced an unusable vector: %s", kind, exc)
            return SearchResponse.degraded_response()
        except SQLAlchemyError as exc:
            logger.error("Search %s query failed in storage: %s", kind, exc)
            return SearchResponse.degraded_response()

        response = SearchResponse(
            results=results,
            page_info=PageInfo(page=page, page_size=page_size, has_next=has_next, total=total),
        )
        self.cache.put(cache_key, response.to_dict())
        return response

    def _hydrate(self, db: Session, neighbors: List[Neighbor]) -> List[ImageRecordRef]:
        if not neighbors:
            return []
        ids = [neighbor.record_id for neighbor in neighbors]
        rows = (
            db.query(ImageRecord.id, ImageRecord.name, ImageRecord.description)
            .filter(ImageRecord.id.in_(ids))
            .all()
        )
        by_id = {row.id: row for row in rows}
        refs = []
        for neighbor in neighbors:
            row = by_id.get(neighbor.record_id)
            # Deleted between ranking and hydration.
            if row is None:
                continue
            refs.append(
                ImageRecordRef(
                    id=int(row.id),
                    name=row.name,
                    description=row.description,
                    distance=float(neighbor.distance),
                )
            )
        return refs
