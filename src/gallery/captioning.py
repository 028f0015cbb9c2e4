"""Fill in blank image names and descriptions from a vision caption."""

from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy import update
from sqlalchemy.orm import Session

from gallery.embeddings.client import Caption
from gallery.errors import ProviderError, ProviderTimeoutError
from gallery.metadata import ImageRecord, utcnow
from gallery.storage import BlobNotFoundError, BlobStore
from gallery.tasks import TASK_GENERATE_EMBEDDING, TaskQueue, embedding_dedupe_key


logger = logging.getLogger(__name__)


class CaptionTask:
    """Caption a record's image and write only the blank text columns."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        blob_store: BlobStore,
        provider,
        queue: TaskQueue,
    ):
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.provider = provider
        self.queue = queue

    def run(self, record_id: int) -> bool:
        with self.session_factory() as db:
            record = db.get(ImageRecord, record_id)
            if record is None or not record.has_file:
                return False
            needs_name = not str(record.name or "").strip()
            needs_description = not str(record.description or "").strip()
            file_key = record.file_key

        if not needs_name and not needs_description:
            return False

        try:
            data = self.blob_store.get(file_key)
            caption: Caption = self.provider.describe_image(data)
        except BlobNotFoundError:
            logger.warning("Blob %s for image %s is missing; skipping caption", file_key, record_id)
            return False
        except (ProviderError, ProviderTimeoutError) as exc:
            logger.error("Caption generation failed for image %s: %s", record_id, exc)
            return False

        values = {"updated_at": utcnow()}
        if needs_name:
            values["name"] = caption.name[:255]
        if needs_description:
            values["description"] = caption.description

        with self.session_factory() as db:
            result = db.execute(
                update(ImageRecord)
                .where(ImageRecord.id == record_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                db.rollback()
                logger.info("Image %s was deleted during captioning", record_id)
                return False
            db.commit()

        logger.info("Captioned image %s as %r", record_id, caption.name)
        self.queue.enqueue(TASK_GENERATE_EMBEDDING, {"record_id": record_id}, embedding_dedupe_key(record_id))
        return True
