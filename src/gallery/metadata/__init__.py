"""Database models for image records and the durable task queue."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, String, Integer, BigInteger, Float, DateTime, Text, ForeignKey, Index, UniqueConstraint, CheckConstraint
from sqlalchemy.dialects.postgresql import JSONB, ARRAY, UUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.types import JSON


@compiles(JSONB, "sqlite")
def compile_jsonb_for_sqlite(element, compiler, **kw):
    return compiler.visit_JSON(element, **kw)


def utcnow() -> datetime:
    """Naive UTC timestamp matching the DateTime columns below."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Float array on PostgreSQL (mirrored into a pgvector column by trigger), JSON list elsewhere.
EmbeddingType = JSON(none_as_null=True).with_variant(ARRAY(Float), "postgresql")


Base = declarative_base()


class ImageRecord(Base):
    """Uploaded image, its attached blob, and its similarity-search embedding."""

    __tablename__ = "images"

    id = Column(Integer, primary_key=True)
    name = Column(String(255))
    description = Column(Text)

    # Attached blob (at most one). A record without file_key has no file.
    file_key = Column(String(1024))
    filename = Column(String(512))
    content_type = Column(String(255))
    byte_size = Column(BigInteger)

    # Written only by the generation pipeline via a column-level UPDATE.
    embedding = Column(EmbeddingType, nullable=True)
    embedding_updated_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    # Maintained explicitly by record edits so embedding writes leave it alone.
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_images_created_at", "created_at"),
    )

    @property
    def has_file(self) -> bool:
        return bool(self.file_key)

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None and len(self.embedding) > 0

    def embedding_text(self) -> str | None:
        """Return "name description" when both are non-blank, else None."""
        name = str(self.name or "").strip()
        description = str(self.description or "").strip()
        if not name or not description:
            return None
        return f"{name} {description}"


class Job(Base):
    """A queued/running/completed background task instance."""

    __tablename__ = "jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    task_name = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="queued")
    priority = Column(Integer, nullable=False, default=100)
    payload = Column(JSONB, nullable=False, default=dict)
    dedupe_key = Column(Text, index=True)
    scheduled_for = Column(DateTime, default=utcnow, nullable=False)
    queued_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    lease_expires_at = Column(DateTime)
    claimed_by_worker = Column(Text)
    last_error = Column(Text)
    result = Column(Text)

    attempts = relationship("JobAttempt", back_populates="job", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_jobs_status_schedule", "status", "scheduled_for"),
        CheckConstraint(
            "status in ('queued','running','succeeded','failed','dead_letter')",
            name="ck_jobs_status",
        ),
    )


class JobAttempt(Base):
    """Single attempt record for a job execution."""

    __tablename__ = "job_attempts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_id = Column(UUID(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    attempt_no = Column(Integer, nullable=False)
    worker_id = Column(Text, nullable=False)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    finished_at = Column(DateTime)
    status = Column(Text, nullable=False)
    error_text = Column(Text)

    job = relationship("Job", back_populates="attempts")

    __table_args__ = (
        UniqueConstraint("job_id", "attempt_no", name="uq_job_attempts_job_attempt"),
        CheckConstraint(
            "status in ('running','succeeded','failed')",
            name="ck_job_attempts_status",
        ),
    )


class JobWorker(Base):
    """Worker heartbeat and runtime metadata."""

    __tablename__ = "job_workers"

    worker_id = Column(Text, primary_key=True)
    hostname = Column(Text, nullable=False)
    last_seen_at = Column(DateTime, default=utcnow, nullable=False)
    running_count = Column(Integer, nullable=False, default=0)
    metadata_json = Column("metadata", JSONB, nullable=False, default=dict)


__all__ = [
    "Base",
    "EmbeddingType",
    "ImageRecord",
    "Job",
    "JobAttempt",
    "JobWorker",
    "utcnow",
]
