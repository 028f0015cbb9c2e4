"""Image record lifecycle: upload, edit, delete, and (re)scheduling embeddings."""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from gallery.errors import NotFoundError, UploadRejectedError
from gallery.metadata import ImageRecord, utcnow
from gallery.settings import settings
from gallery.storage import BlobStore, build_blob_key
from gallery.tasks import (
    TASK_GENERATE_CAPTION,
    TASK_GENERATE_EMBEDDING,
    TaskQueue,
    caption_dedupe_key,
    embedding_dedupe_key,
)
from gallery.vector_store import invalidate_similarity_index


logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {"image/png", "image/jpeg", "image/gif"}


def validate_upload(data: Optional[bytes], content_type: Optional[str], max_bytes: Optional[int] = None) -> str:
    """Return the normalized content type or raise UploadRejectedError."""
    if not data:
        raise UploadRejectedError("Uploaded file is empty")
    limit = int(max_bytes or settings.upload_max_bytes)
    if len(data) > limit:
        raise UploadRejectedError(f"Uploaded file exceeds {limit // (1024 * 1024)} MB limit")
    normalized = str(content_type or "").split(";", 1)[0].strip().lower()
    if normalized == "image/jpg":
        normalized = "image/jpeg"
    if normalized not in ALLOWED_CONTENT_TYPES:
        raise UploadRejectedError(f"Unsupported content type: {content_type or 'unknown'}")
    return normalized


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


def create_record(
    db: Session,
    blob_store: BlobStore,
    queue: TaskQueue,
    *,
    data: bytes,
    filename: Optional[str],
    content_type: Optional[str],
    name: Optional[str] = None,
    description: Optional[str] = None,
    skip_generation: bool = False,
    max_bytes: Optional[int] = None,
) -> ImageRecord:
    """Validate and store an upload, then schedule captioning/embedding once committed."""
    normalized_type = validate_upload(data, content_type, max_bytes)
    file_key = build_blob_key(filename)
    blob_store.put(file_key, data, content_type=normalized_type)

    now = utcnow()
    record = ImageRecord(
        name=_clean_text(name),
        description=_clean_text(description),
        file_key=file_key,
        filename=filename,
        content_type=normalized_type,
        byte_size=len(data),
        created_at=now,
        updated_at=now,
    )
    db.add(record)
    try:
        db.commit()
    except Exception:
        db.rollback()
        blob_store.delete(file_key)
        raise
    db.refresh(record)
    logger.info("Created image %s (%s, %s bytes)", record.id, normalized_type, len(data))

    if not skip_generation:
        if record.embedding_text() is None:
            queue.enqueue(TASK_GENERATE_CAPTION, {"record_id": record.id}, caption_dedupe_key(record.id))
        queue.enqueue(TASK_GENERATE_EMBEDDING, {"record_id": record.id}, embedding_dedupe_key(record.id))
    return record


def get_record(db: Session, record_id: int) -> ImageRecord:
    record = db.get(ImageRecord, record_id)
    if record is None:
        raise NotFoundError(record_id)
    return record


def list_records(db: Session, *, limit: int = 50, offset: int = 0) -> Tuple[List[ImageRecord], int]:
    total = int(db.query(func.count(ImageRecord.id)).scalar() or 0)
    rows = (
        db.query(ImageRecord)
        .order_by(ImageRecord.id.desc())
        .offset(max(0, int(offset)))
        .limit(max(1, int(limit)))
        .all()
    )
    return rows, total


def update_record(
    db: Session,
    record_id: int,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> ImageRecord:
    """Edit name/description. The embedding column is never touched here."""
    record = get_record(db, record_id)
    if name is not None:
        record.name = _clean_text(name)
    if description is not None:
        record.description = _clean_text(description)
    record.updated_at = utcnow()
    db.commit()
    db.refresh(record)
    return record


def delete_record(db: Session, blob_store: BlobStore, record_id: int) -> None:
    record = get_record(db, record_id)
    file_key = record.file_key
    db.delete(record)
    db.commit()
    invalidate_similarity_index(db)
    if file_key:
        blob_store.delete(file_key)
    logger.info("Deleted image %s", record_id)


def request_embedding(db: Session, queue: TaskQueue, record_id: int):
    """Re-trigger embedding generation for an existing record."""
    get_record(db, record_id)
    return queue.enqueue(TASK_GENERATE_EMBEDDING, {"record_id": record_id}, embedding_dedupe_key(record_id))
