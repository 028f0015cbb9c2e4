"""Background generation of image embeddings."""

from __future__ import annotations

from enum import Enum
import logging
from typing import Callable, List

from sqlalchemy.orm import Session

from gallery.config import GalleryConfig
from gallery.embeddings import EmbeddingProvider
from gallery.errors import (
    DimensionMismatchError,
    InvalidEmbeddingError,
    NotFoundError,
    ProviderError,
    ProviderTimeoutError,
)
from gallery.metadata import ImageRecord
from gallery.storage import BlobNotFoundError, BlobStore
from gallery.tasks import TASK_GENERATE_EMBEDDING, TaskQueue, embedding_dedupe_key
from gallery.vector_store import VectorStore, validate_embedding


logger = logging.getLogger(__name__)


class GenerationOutcome(str, Enum):
    STORED = "stored"
    RECORD_MISSING = "record_missing"
    NO_FILE = "no_file"
    FAILED = "failed"


class EmbeddingPipeline:
    """Compute and persist the embedding for one record.

    Safe to run repeatedly for the same record; the last successful write
    wins. Failures never propagate: the record just stays without an
    embedding until a later run succeeds.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        blob_store: BlobStore,
        provider: EmbeddingProvider,
        config: GalleryConfig,
    ):
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.provider = provider
        self.config = config

    def run(self, record_id: int) -> GenerationOutcome:
        with self.session_factory() as db:
            record = db.get(ImageRecord, record_id)
            if record is None:
                logger.info("Image %s no longer exists; skipping embedding", record_id)
                return GenerationOutcome.RECORD_MISSING
            if not record.has_file:
                logger.info("Image %s has no attached file; skipping embedding", record_id)
                return GenerationOutcome.NO_FILE
            text_input = record.embedding_text()
            file_key = record.file_key

        try:
            if text_input:
                vector = self.provider.embed_text(text_input)
            else:
                try:
                    data = self.blob_store.get(file_key)
                except BlobNotFoundError:
                    logger.warning("Blob %s for image %s is missing; skipping embedding", file_key, record_id)
                    return GenerationOutcome.NO_FILE
                vector = self.provider.embed_image(data)

            values = validate_embedding(vector, self.config.embedding_dimension)

            with self.session_factory() as db:
                VectorStore(db, self.config).upsert_embedding(record_id, values)
        except NotFoundError:
            logger.info("Image %s was deleted during embedding generation", record_id)
            return GenerationOutcome.RECORD_MISSING
        except (ProviderError, ProviderTimeoutError, DimensionMismatchError, InvalidEmbeddingError) as exc:
            logger.error("Embedding generation failed for image %s: %s", record_id, exc)
            return GenerationOutcome.FAILED

        logger.info(
            "Stored embedding for image %s from %s",
            record_id,
            "name/description" if text_input else "image bytes",
        )
        return GenerationOutcome.STORED


def missing_embedding_ids(db: Session) -> List[int]:
    rows = (
        db.query(ImageRecord.id)
        .filter(ImageRecord.file_key.isnot(None), ImageRecord.embedding.is_(None))
        .order_by(ImageRecord.id.asc())
        .all()
    )
    return [int(row.id) for row in rows]


def enqueue_missing_embeddings(db: Session, queue: TaskQueue) -> int:
    """Queue generation for every record with a file but no embedding."""
    record_ids = missing_embedding_ids(db)
    for record_id in record_ids:
        queue.enqueue(TASK_GENERATE_EMBEDDING, {"record_id": record_id}, embedding_dedupe_key(record_id))
    logger.info("Queued embedding generation for %s image(s)", len(record_ids))
    return len(record_ids)
