"""Durable task queue: job rows in the database, executed by gallery.worker."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Protocol

from sqlalchemy.orm import Session

from gallery.metadata import Job, utcnow
from gallery.settings import settings


logger = logging.getLogger(__name__)

TASK_GENERATE_EMBEDDING = "generate_embedding"
TASK_GENERATE_CAPTION = "generate_caption"

TaskHandler = Callable[[Dict[str, Any]], Optional[str]]


class NonRetryableTaskError(RuntimeError):
    """Raised by a handler when retrying the job cannot help."""


class TaskQueue(Protocol):
    def enqueue(self, name: str, payload: Dict[str, Any], dedupe_key: Optional[str] = None) -> Any:
        ...


def embedding_dedupe_key(record_id: int) -> str:
    return f"{TASK_GENERATE_EMBEDDING}:{int(record_id)}"


def caption_dedupe_key(record_id: int) -> str:
    return f"{TASK_GENERATE_CAPTION}:{int(record_id)}"


def enqueue_task(
    db: Session,
    name: str,
    payload: Dict[str, Any],
    dedupe_key: Optional[str] = None,
    *,
    priority: int = 100,
    max_attempts: Optional[int] = None,
) -> Job:
    """Insert a queued job and commit.

    With a dedupe_key, an already-queued job for the same key is returned
    instead. Running jobs do not count, so a re-trigger during execution
    still queues a fresh run.
    """
    if dedupe_key:
        existing = (
            db.query(Job)
            .filter(Job.dedupe_key == dedupe_key, Job.status == "queued")
            .order_by(Job.queued_at.asc())
            .first()
        )
        if existing is not None:
            logger.debug("Task %s already queued as job %s", dedupe_key, existing.id)
            return existing

    now = utcnow()
    job = Job(
        task_name=name,
        status="queued",
        priority=priority,
        payload=dict(payload or {}),
        dedupe_key=dedupe_key,
        scheduled_for=now,
        queued_at=now,
        attempt_count=0,
        max_attempts=int(max_attempts or settings.task_max_attempts),
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info("Queued %s job %s payload=%s", name, job.id, payload)
    return job


class DatabaseTaskQueue:
    """TaskQueue that writes job rows through its own short-lived session.

    Using a separate session keeps enqueueing independent of the caller's
    transaction, so jobs are only ever created after the caller committed.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def enqueue(self, name: str, payload: Dict[str, Any], dedupe_key: Optional[str] = None) -> Job:
        with self.session_factory() as db:
            job = enqueue_task(db, name, payload, dedupe_key)
            db.expunge(job)
            return job
