"""Test configuration and fixtures."""

import io
import uuid
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from gallery.config import GalleryConfig
from gallery.embeddings.client import Caption
from gallery.metadata import Base, ImageRecord, utcnow
from gallery.storage import LocalBlobStore
from gallery.vector_store import reset_vector_store_caches


TEST_DIMENSION = 4


class FakeProvider:
    """In-process embedding provider that records every call."""

    def __init__(self, text_vectors=None, default_vector=None, image_vector=None, error=None, caption=None):
        self.text_vectors = dict(text_vectors or {})
        self.default_vector = list(default_vector or [1.0, 0.0, 0.0, 0.0])
        self.image_vector = list(image_vector or [0.0, 1.0, 0.0, 0.0])
        self.error = error
        self.caption = caption or Caption(name="Red square on canvas", description="A plain red square.")
        self.calls = []

    def embed_text(self, text):
        self.calls.append(("text", text))
        if self.error:
            raise self.error
        return list(self.text_vectors.get(text, self.default_vector))

    def embed_image(self, data):
        self.calls.append(("image", len(data)))
        if self.error:
            raise self.error
        return list(self.image_vector)

    def describe_image(self, data):
        self.calls.append(("caption", len(data)))
        if self.error:
            raise self.error
        return self.caption


class RecordingQueue:
    """TaskQueue double that keeps enqueued jobs in a list."""

    def __init__(self):
        self.jobs = []

    def enqueue(self, name, payload, dedupe_key=None):
        job = SimpleNamespace(id=uuid.uuid4(), status="queued", task_name=name, payload=payload, dedupe_key=dedupe_key)
        self.jobs.append(job)
        return job

    def names(self):
        return [job.task_name for job in self.jobs]


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = float(start)
        self.sleeps = []

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += float(seconds)

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += float(seconds)


@pytest.fixture(autouse=True)
def reset_caches():
    reset_vector_store_caches()
    yield
    reset_vector_store_caches()


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so sessions on different threads see the same data."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'gallery.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def test_db(session_factory):
    """Create test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def config():
    return GalleryConfig(
        embedding_dimension=TEST_DIMENSION,
        page_size=2,
        cache_ttl_seconds=300,
        rate_limit=10,
        rate_window_seconds=60,
        similar_default_limit=10,
        provider_request_timeout_seconds=1.0,
        provider_hard_timeout_seconds=3.0,
        provider_max_retries=2,
        provider_backoff_base_seconds=0.5,
    )


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def sample_image_data():
    """Generate sample PNG bytes for testing."""
    from PIL import Image

    img = Image.new("RGB", (32, 32), color="red")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def make_record(test_db, blob_store, sample_image_data):
    """Insert an ImageRecord directly, optionally with a stored blob and embedding."""

    def _make(name=None, description=None, embedding=None, with_file=True):
        file_key = None
        if with_file:
            file_key = f"images/{uuid.uuid4().hex}/sample.png"
            blob_store.put(file_key, sample_image_data, content_type="image/png")
        now = utcnow()
        record = ImageRecord(
            name=name,
            description=description,
            file_key=file_key,
            filename="sample.png" if with_file else None,
            content_type="image/png" if with_file else None,
            byte_size=len(sample_image_data) if with_file else None,
            embedding=list(embedding) if embedding is not None else None,
            embedding_updated_at=now if embedding is not None else None,
            created_at=now,
            updated_at=now,
        )
        test_db.add(record)
        test_db.commit()
        test_db.refresh(record)
        return record

    return _make
