"""Background queue worker for executing jobs."""

from __future__ import annotations

import logging
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import timedelta
from threading import Event, Thread
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from gallery.metadata import Job, JobAttempt, JobWorker, utcnow
from gallery.settings import settings
from gallery.tasks import NonRetryableTaskError, TaskHandler


logger = logging.getLogger(__name__)

_MAX_ERROR_CHARS = 20000
_DEFAULT_RETRY_BASE_SECONDS = 60
_MAX_RETRY_DELAY_SECONDS = 3600


@dataclass
class ClaimedJob:
    id: str
    task_name: str
    payload: dict[str, Any]
    max_attempts: int
    attempt_no: int


@dataclass
class ExecutionResult:
    success: bool
    attempt_status: str
    result_text: Optional[str]
    error_text: Optional[str]
    retryable: bool


def _tail_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    if not text:
        return None
    return text[-_MAX_ERROR_CHARS:]


def retry_delay_seconds(attempts_used: int, base_seconds: int = _DEFAULT_RETRY_BASE_SECONDS) -> int:
    return min(base_seconds * (2 ** max(attempts_used - 1, 0)), _MAX_RETRY_DELAY_SECONDS)


def _upsert_worker_heartbeat(
    db: Session,
    *,
    worker_id: str,
    hostname: str,
    running_count: int,
    metadata_json: dict[str, Any],
) -> None:
    row = db.query(JobWorker).filter(JobWorker.worker_id == worker_id).first()
    now = utcnow()
    if row is None:
        db.add(
            JobWorker(
                worker_id=worker_id,
                hostname=hostname,
                running_count=running_count,
                metadata_json=metadata_json,
                last_seen_at=now,
            )
        )
        return

    row.hostname = hostname
    row.running_count = running_count
    row.metadata_json = metadata_json
    row.last_seen_at = now


def _claim_next_job(
    session_factory: Callable[[], Session],
    *,
    worker_id: str,
    hostname: str,
    lease_seconds: int,
) -> Optional[ClaimedJob]:
    db = session_factory()
    try:
        now = utcnow()
        # Running jobs whose lease lapsed belong to a worker that died mid-task.
        query = (
            db.query(Job)
            .filter(
                or_(
                    and_(Job.status == "queued", Job.scheduled_for <= now),
                    and_(Job.status == "running", Job.lease_expires_at < now),
                )
            )
            .order_by(
                Job.priority.asc(),
                Job.queued_at.asc(),
                Job.id.asc(),
            )
        )
        if db.bind and db.bind.dialect.name == "postgresql":
            query = query.with_for_update(skip_locked=True)
        else:
            query = query.with_for_update()

        job = query.first()
        if job is None:
            _upsert_worker_heartbeat(
                db,
                worker_id=worker_id,
                hostname=hostname,
                running_count=0,
                metadata_json={},
            )
            db.commit()
            return None

        if job.status == "running":
            stale_attempt = (
                db.query(JobAttempt)
                .filter(JobAttempt.job_id == job.id, JobAttempt.attempt_no == job.attempt_count)
                .first()
            )
            if stale_attempt is not None and stale_attempt.status == "running":
                stale_attempt.status = "failed"
                stale_attempt.finished_at = now
                stale_attempt.error_text = f"Lease expired while held by {job.claimed_by_worker}"
            logger.warning("Reclaiming job %s after lease expiry (worker=%s)", job.id, job.claimed_by_worker)

        attempt_no = int(job.attempt_count or 0) + 1
        job.status = "running"
        if not job.started_at:
            job.started_at = now
        job.lease_expires_at = now + timedelta(seconds=lease_seconds)
        job.claimed_by_worker = worker_id
        job.attempt_count = attempt_no
        db.add(
            JobAttempt(
                job_id=job.id,
                attempt_no=attempt_no,
                worker_id=worker_id,
                started_at=now,
                status="running",
            )
        )

        _upsert_worker_heartbeat(
            db,
            worker_id=worker_id,
            hostname=hostname,
            running_count=1,
            metadata_json={"last_job_id": str(job.id)},
        )
        db.commit()

        return ClaimedJob(
            id=str(job.id),
            task_name=str(job.task_name or ""),
            payload=job.payload or {},
            max_attempts=int(job.max_attempts or 1),
            attempt_no=attempt_no,
        )
    finally:
        db.close()


def _execute_claimed_job(job: ClaimedJob, handlers: Dict[str, TaskHandler]) -> ExecutionResult:
    handler = handlers.get(job.task_name)
    if handler is None:
        return ExecutionResult(
            success=False,
            attempt_status="failed",
            result_text=None,
            error_text=f"No handler registered for task '{job.task_name}'",
            retryable=False,
        )
    if not isinstance(job.payload, dict):
        return ExecutionResult(
            success=False,
            attempt_status="failed",
            result_text=None,
            error_text="Job payload must be a JSON object",
            retryable=False,
        )

    try:
        result = handler(job.payload)
        return ExecutionResult(
            success=True,
            attempt_status="succeeded",
            result_text=_tail_text(result),
            error_text=None,
            retryable=False,
        )
    except NonRetryableTaskError as exc:
        return ExecutionResult(
            success=False,
            attempt_status="failed",
            result_text=None,
            error_text=str(exc),
            retryable=False,
        )
    except Exception as exc:
        logger.exception("Job %s (%s) raised", job.id, job.task_name)
        return ExecutionResult(
            success=False,
            attempt_status="failed",
            result_text=None,
            error_text=_tail_text(f"{type(exc).__name__}: {exc}"),
            retryable=True,
        )


def _finalize_job(
    session_factory: Callable[[], Session],
    *,
    claimed_job: ClaimedJob,
    result: ExecutionResult,
    worker_id: str,
    hostname: str,
    retry_base_seconds: int,
) -> None:
    db = session_factory()
    try:
        job_uuid = uuid.UUID(claimed_job.id)
        query = db.query(Job).filter(Job.id == job_uuid)
        if db.bind and db.bind.dialect.name == "postgresql":
            query = query.with_for_update(skip_locked=False)
        else:
            query = query.with_for_update()
        job = query.first()
        if job is None:
            db.rollback()
            logger.warning("Claimed job %s disappeared before finalization", claimed_job.id)
            return

        if str(job.claimed_by_worker or "").strip() != worker_id:
            db.rollback()
            logger.warning(
                "Job %s is no longer claimed by %s (claimed_by=%s)",
                claimed_job.id,
                worker_id,
                job.claimed_by_worker,
            )
            return

        now = utcnow()
        attempt = (
            db.query(JobAttempt)
            .filter(
                JobAttempt.job_id == job_uuid,
                JobAttempt.attempt_no == claimed_job.attempt_no,
            )
            .first()
        )

        job.lease_expires_at = None
        job.claimed_by_worker = None
        if result.success:
            job.status = "succeeded"
            job.finished_at = now
            job.last_error = None
            job.result = result.result_text
            logger.info("Job %s (%s) succeeded: %s", claimed_job.id, claimed_job.task_name, result.result_text)
        else:
            attempts_used = int(job.attempt_count or 0)
            max_attempts = int(job.max_attempts or claimed_job.max_attempts or 1)
            if result.retryable and attempts_used < max_attempts:
                delay_seconds = retry_delay_seconds(attempts_used, retry_base_seconds)
                job.status = "queued"
                job.scheduled_for = now + timedelta(seconds=delay_seconds)
                job.started_at = None
                job.finished_at = None
                job.last_error = result.error_text
                logger.warning(
                    "Job %s failed (attempt %s/%s), requeued in %ss: %s",
                    claimed_job.id,
                    attempts_used,
                    max_attempts,
                    delay_seconds,
                    result.error_text,
                )
            else:
                job.status = "dead_letter"
                job.finished_at = now
                job.last_error = result.error_text
                logger.error(
                    "Job %s moved to dead_letter after attempt %s/%s: %s",
                    claimed_job.id,
                    attempts_used,
                    max_attempts,
                    result.error_text,
                )

        if attempt:
            attempt.status = result.attempt_status
            attempt.finished_at = now
            attempt.error_text = result.error_text

        _upsert_worker_heartbeat(
            db,
            worker_id=worker_id,
            hostname=hostname,
            running_count=0,
            metadata_json={"last_job_id": claimed_job.id},
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to finalize job %s", claimed_job.id)
    finally:
        db.close()


def _build_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def run_loop(
    *,
    handlers: Dict[str, TaskHandler],
    session_factory: Callable[[], Session],
    stop_event: Optional[Event] = None,
    once: bool = False,
    poll_seconds: Optional[float] = None,
    lease_seconds: Optional[int] = None,
    retry_base_seconds: int = _DEFAULT_RETRY_BASE_SECONDS,
    worker_id: Optional[str] = None,
) -> int:
    """Claim and run jobs until stopped. Returns the number of jobs processed.

    With ``once=True`` the loop drains every job that is due and then returns.
    """
    stop = stop_event or Event()
    worker_id = worker_id or _build_worker_id()
    hostname = socket.gethostname()
    poll = float(poll_seconds if poll_seconds is not None else settings.worker_poll_seconds)
    lease = int(lease_seconds if lease_seconds is not None else settings.worker_lease_seconds)
    processed = 0

    logger.info("Job worker started: worker_id=%s lease_seconds=%s", worker_id, lease)

    while not stop.is_set():
        try:
            claimed_job = _claim_next_job(
                session_factory,
                worker_id=worker_id,
                hostname=hostname,
                lease_seconds=lease,
            )
        except Exception:
            logger.exception("Worker claim loop failed")
            if once:
                break
            stop.wait(max(1.0, poll))
            continue

        if claimed_job is None:
            if once:
                break
            stop.wait(max(0.1, poll))
            continue

        logger.info(
            "Claimed job %s task=%s attempt=%s",
            claimed_job.id,
            claimed_job.task_name,
            claimed_job.attempt_no,
        )
        result = _execute_claimed_job(claimed_job, handlers)
        _finalize_job(
            session_factory,
            claimed_job=claimed_job,
            result=result,
            worker_id=worker_id,
            hostname=hostname,
            retry_base_seconds=retry_base_seconds,
        )
        processed += 1

    logger.info("Job worker stopping: worker_id=%s", worker_id)
    return processed


class WorkerPool:
    """A group of worker threads sharing one stop event."""

    def __init__(self, threads: List[Thread], stop_event: Event):
        self.threads = threads
        self.stop_event = stop_event

    def stop(self, timeout_seconds: float = 10.0) -> None:
        self.stop_event.set()
        for thread in self.threads:
            if thread.is_alive():
                thread.join(timeout=timeout_seconds)
        logger.info("Stopped %s worker thread(s)", len(self.threads))


def start_worker_pool(count: int, **run_kwargs) -> WorkerPool:
    """Start ``count`` daemon threads each running ``run_loop(**run_kwargs)``."""
    stop_event = Event()
    threads = []
    for index in range(max(1, int(count))):
        thread = Thread(
            target=run_loop,
            kwargs={**run_kwargs, "stop_event": stop_event, "once": False},
            name=f"gallery-job-worker-{index}",
            daemon=True,
        )
        thread.start()
        threads.append(thread)
    logger.info("Started %s worker thread(s)", len(threads))
    return WorkerPool(threads, stop_event)
