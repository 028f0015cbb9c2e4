"""Embedding column writes and nearest-neighbor lookups over the images table.

Two interchangeable backends answer ``nearest_neighbors``:

- pgvector: ``embedding_vec <=> query`` over the ivfflat-indexed shadow column
  that a trigger keeps in sync with ``images.embedding``.
- in-memory: a cached matrix of unit vectors scanned with numpy, used on
  SQLite, or when the extension/column is missing, or after a pgvector error.

Both return rows ordered by ascending cosine distance, ties by id ascending.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import threading
import time
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from sqlalchemy import func, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gallery.config import GalleryConfig
from gallery.errors import DimensionMismatchError, InvalidEmbeddingError, NotFoundError
from gallery.metadata import ImageRecord, utcnow


logger = logging.getLogger(__name__)

SIMILARITY_CACHE_MAX_ENTRIES = 8
# Extra KNN candidates fetched so equal-distance rows can be re-sorted by id.
PGVECTOR_TIE_MARGIN = 8

_similarity_cache_lock = threading.Lock()
_similarity_index_cache: Dict[Tuple[str, int], dict] = {}
# Bumped by invalidate_similarity_index so an index built across a write is not kept.
_similarity_index_generation: Dict[str, int] = {}
_pgvector_capability_cache: Dict[str, bool] = {}


@dataclass(frozen=True)
class Neighbor:
    record_id: int
    distance: float


def validate_embedding(vector: Optional[Sequence[float]], dimension: int) -> List[float]:
    """Return vector as a list of floats or raise if it may not be persisted."""
    if vector is None:
        raise DimensionMismatchError(dimension, 0)
    try:
        values = [float(value) for value in vector]
    except (TypeError, ValueError) as exc:
        raise InvalidEmbeddingError(f"Embedding contains non-numeric values: {exc}") from exc
    if len(values) != dimension:
        raise DimensionMismatchError(dimension, len(values))
    if not all(math.isfinite(value) for value in values):
        raise InvalidEmbeddingError("Embedding contains non-finite values")
    return values


def _engine_cache_key(db: Session) -> str:
    bind = db.get_bind()
    return str(bind.engine.url)


def invalidate_similarity_index(db: Session) -> None:
    """Drop cached in-memory indexes for the session's database."""
    engine_key = _engine_cache_key(db)
    with _similarity_cache_lock:
        _similarity_index_generation[engine_key] = _similarity_index_generation.get(engine_key, 0) + 1
        for key in [key for key in _similarity_index_cache if key[0] == engine_key]:
            _similarity_index_cache.pop(key, None)


def reset_vector_store_caches() -> None:
    with _similarity_cache_lock:
        _similarity_index_cache.clear()
        _similarity_index_generation.clear()
    _pgvector_capability_cache.clear()


def _to_pgvector_literal(values: np.ndarray) -> str:
    return "[" + ",".join(f"{float(value):.10g}" for value in values.tolist()) + "]"


class VectorStore:
    """Adapter over ``images.embedding`` for one database session."""

    def __init__(self, db: Session, config: GalleryConfig):
        self.db = db
        self.config = config

    # -- Writes -------------------------------------------------------------

    def upsert_embedding(self, record_id: int, vector: Sequence[float]) -> None:
        """Set the embedding column for one row without running the ORM save lifecycle.

        Raises:
            DimensionMismatchError: vector length differs from the configured dimension.
            InvalidEmbeddingError: vector has NaN/inf components.
            NotFoundError: no row has this id.
        """
        values = validate_embedding(vector, self.config.embedding_dimension)
        result = self.db.execute(
            update(ImageRecord)
            .where(ImageRecord.id == record_id)
            .values(embedding=values, embedding_updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            self.db.rollback()
            raise NotFoundError(record_id)
        self.db.commit()
        invalidate_similarity_index(self.db)

    # -- Reads --------------------------------------------------------------

    def get_embedding(self, record_id: int) -> Optional[List[float]]:
        row = self.db.query(ImageRecord.embedding).filter(ImageRecord.id == record_id).first()
        if row is None:
            raise NotFoundError(record_id)
        embedding = row[0]
        if not embedding:
            return None
        return [float(value) for value in embedding]

    def count_embedded(self) -> int:
        return int(
            self.db.query(func.count(ImageRecord.id))
            .filter(ImageRecord.embedding.isnot(None))
            .scalar()
            or 0
        )

    def nearest_neighbors(
        self,
        vector: Optional[Sequence[float]],
        limit: int,
        exclude_id: Optional[int] = None,
        offset: int = 0,
    ) -> List[Neighbor]:
        """Return up to ``limit`` rows closest to ``vector`` by cosine distance."""
        if vector is None or len(vector) == 0:
            return []
        safe_limit = int(limit or 0)
        if safe_limit <= 0:
            return []
        safe_offset = max(0, int(offset or 0))

        query = np.asarray([float(value) for value in vector], dtype=np.float64)
        if query.size != self.config.embedding_dimension:
            raise DimensionMismatchError(self.config.embedding_dimension, int(query.size))
        if not np.all(np.isfinite(query)):
            raise InvalidEmbeddingError("Query vector contains non-finite values")
        norm = float(np.linalg.norm(query))
        if norm <= 1e-12:
            return []
        unit_query = query / norm

        ranked = self._nearest_with_pgvector(unit_query, safe_limit, exclude_id, safe_offset)
        if ranked is not None:
            return ranked
        return self._nearest_in_memory(unit_query, safe_limit, exclude_id, safe_offset)

    # -- pgvector backend ---------------------------------------------------

    def _is_pgvector_ready(self) -> bool:
        bind = self.db.get_bind()
        if bind.dialect.name != "postgresql":
            return False

        cache_key = _engine_cache_key(self.db)
        cached = _pgvector_capability_cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            row = self.db.execute(
                text(
                    """
                    SELECT
                        EXISTS (SELECT 1 FROM pg_extension WHERE extname = 'vector') AS has_extension,
                        EXISTS (
                            SELECT 1
                            FROM information_schema.columns
                            WHERE table_schema = 'public'
                              AND table_name = 'images'
                              AND column_name = 'embedding_vec'
                        ) AS has_embedding_vec
                    """
                )
            ).mappings().first()
            can_use = bool(row and row["has_extension"] and row["has_embedding_vec"])
            _pgvector_capability_cache[cache_key] = can_use
            return can_use
        except SQLAlchemyError:
            self.db.rollback()
            _pgvector_capability_cache[cache_key] = False
            return False

    def _nearest_with_pgvector(
        self,
        unit_query: np.ndarray,
        limit: int,
        exclude_id: Optional[int],
        offset: int,
    ) -> Optional[List[Neighbor]]:
        if not self._is_pgvector_ready():
            return None

        # ORDER BY only the distance so the ivfflat index can serve the scan.
        candidate_limit = offset + limit + PGVECTOR_TIE_MARGIN
        exclude_clause = "AND id <> :exclude_id" if exclude_id is not None else ""
        params = {
            "query_vec": _to_pgvector_literal(unit_query),
            "candidate_limit": int(candidate_limit),
        }
        if exclude_id is not None:
            params["exclude_id"] = int(exclude_id)

        try:
            rows = self.db.execute(
                text(
                    f"""
                    SELECT
                        id,
                        embedding_vec <=> CAST(:query_vec AS vector) AS distance
                    FROM images
                    WHERE embedding_vec IS NOT NULL
                      {exclude_clause}
                    ORDER BY embedding_vec <=> CAST(:query_vec AS vector)
                    LIMIT :candidate_limit
                    """
                ),
                params,
            ).mappings().all()
        except SQLAlchemyError as exc:
            self.db.rollback()
            _pgvector_capability_cache[_engine_cache_key(self.db)] = False
            logger.warning("pgvector similarity query failed; falling back to in-memory index: %s", exc)
            return None

        candidates = [
            Neighbor(record_id=int(row["id"]), distance=float(row["distance"]))
            for row in rows
            if row["distance"] is not None and not math.isnan(float(row["distance"]))
        ]
        candidates.sort(key=lambda neighbor: (neighbor.distance, neighbor.record_id))
        return candidates[offset:offset + limit]

    # -- In-memory backend --------------------------------------------------

    def _build_similarity_index(self) -> dict:
        dimension = self.config.embedding_dimension
        rows = (
            self.db.query(ImageRecord.id, ImageRecord.embedding)
            .filter(ImageRecord.embedding.isnot(None))
            .order_by(ImageRecord.id.asc())
            .all()
        )
        record_ids = []
        vectors = []
        for row in rows:
            embedding = row.embedding
            if not embedding:
                continue
            vec = np.asarray(embedding, dtype=np.float64)
            if vec.ndim != 1 or vec.size != dimension:
                logger.warning("Skipping image %s with %s-dimensional embedding", row.id, vec.size)
                continue
            norm = float(np.linalg.norm(vec))
            if norm <= 1e-12:
                continue
            record_ids.append(int(row.id))
            vectors.append(vec / norm)

        if not vectors:
            matrix = np.empty((0, dimension), dtype=np.float64)
            ids = np.empty((0,), dtype=np.int64)
        else:
            matrix = np.vstack(vectors)
            ids = np.asarray(record_ids, dtype=np.int64)

        return {
            "built_at": time.time(),
            "matrix": matrix,
            "record_ids": ids,
        }

    def _embedding_version(self) -> tuple:
        """Cheap fingerprint of the embedded rows, so writes from other processes are noticed."""
        count, latest, id_sum = (
            self.db.query(
                func.count(ImageRecord.id),
                func.max(ImageRecord.embedding_updated_at),
                func.sum(ImageRecord.id),
            )
            .filter(ImageRecord.embedding.isnot(None))
            .one()
        )
        return int(count or 0), latest, int(id_sum or 0)

    def _get_similarity_index(self) -> dict:
        engine_key = _engine_cache_key(self.db)
        key = (engine_key, int(self.config.embedding_dimension))
        ttl = float(self.config.similarity_index_ttl_seconds)
        version = self._embedding_version()
        now = time.time()
        with _similarity_cache_lock:
            cached = _similarity_index_cache.get(key)
            if cached and cached.get("version") == version and (now - float(cached.get("built_at", 0))) <= ttl:
                return cached
            generation = _similarity_index_generation.get(engine_key, 0)

        built = self._build_similarity_index()
        built["version"] = version
        with _similarity_cache_lock:
            if _similarity_index_generation.get(engine_key, 0) != generation:
                # A write landed while building; answer this query but do not keep the index.
                return built
            _similarity_index_cache[key] = built
            if len(_similarity_index_cache) > SIMILARITY_CACHE_MAX_ENTRIES:
                oldest_key = min(
                    _similarity_index_cache.keys(),
                    key=lambda cache_key: float(_similarity_index_cache[cache_key].get("built_at", 0.0)),
                )
                if oldest_key != key:
                    _similarity_index_cache.pop(oldest_key, None)
        return built

    def _nearest_in_memory(
        self,
        unit_query: np.ndarray,
        limit: int,
        exclude_id: Optional[int],
        offset: int,
    ) -> List[Neighbor]:
        index = self._get_similarity_index()
        matrix = index["matrix"]
        candidate_ids = index["record_ids"]
        if matrix.size == 0 or candidate_ids.size == 0:
            return []

        distances = 1.0 - np.dot(matrix, unit_query)
        if exclude_id is not None:
            keep_mask = candidate_ids != int(exclude_id)
            candidate_ids = candidate_ids[keep_mask]
            distances = distances[keep_mask]
        if candidate_ids.size == 0:
            return []

        # lexsort: last key is primary.
        ordered = np.lexsort((candidate_ids, distances))[offset:offset + limit]
        return [
            Neighbor(record_id=int(candidate_ids[idx]), distance=float(distances[idx]))
            for idx in ordered
        ]
