"""Tests for the image record lifecycle and captioning."""

import pytest

from gallery.captioning import CaptionTask
from gallery.embeddings import Caption
from gallery.errors import NotFoundError, ProviderError, UploadRejectedError
from gallery.metadata import ImageRecord
from gallery.records import (
    create_record,
    delete_record,
    get_record,
    list_records,
    request_embedding,
    update_record,
    validate_upload,
)
from gallery.storage import BlobNotFoundError
from gallery.tasks import TASK_GENERATE_CAPTION, TASK_GENERATE_EMBEDDING
from gallery.vector_store import VectorStore

from conftest import FakeProvider


class TestValidateUpload:
    """Tests for upload validation."""

    def test_accepts_and_normalizes_jpg(self):
        assert validate_upload(b"\xff\xd8\xff", "image/jpg") == "image/jpeg"
        assert validate_upload(b"GIF89a", "image/GIF; charset=binary") == "image/gif"

    @pytest.mark.parametrize(
        "data,content_type,max_bytes",
        [
            (b"", "image/png", None),
            (None, "image/png", None),
            (b"x" * 11, "image/png", 10),
            (b"%PDF-1.7", "application/pdf", None),
            (b"\x89PNG", None, None),
        ],
    )
    def test_rejects(self, data, content_type, max_bytes):
        with pytest.raises(UploadRejectedError):
            validate_upload(data, content_type, max_bytes)


class TestCreateRecord:
    """Tests for create_record."""

    def test_blank_fields_schedule_caption_then_embedding(self, test_db, blob_store, queue, sample_image_data):
        record = create_record(
            test_db,
            blob_store,
            queue,
            data=sample_image_data,
            filename="red.png",
            content_type="image/png",
            name="  Red  ",
        )

        assert record.id is not None
        assert record.name == "Red"
        assert record.description is None
        assert record.embedding is None
        assert blob_store.get(record.file_key) == sample_image_data
        assert queue.names() == [TASK_GENERATE_CAPTION, TASK_GENERATE_EMBEDDING]
        assert queue.jobs[1].payload == {"record_id": record.id}

    def test_filled_fields_schedule_only_embedding(self, test_db, blob_store, queue, sample_image_data):
        create_record(
            test_db,
            blob_store,
            queue,
            data=sample_image_data,
            filename="red.png",
            content_type="image/png",
            name="Red",
            description="A red square",
        )

        assert queue.names() == [TASK_GENERATE_EMBEDDING]

    def test_skip_generation(self, test_db, blob_store, queue, sample_image_data):
        create_record(
            test_db,
            blob_store,
            queue,
            data=sample_image_data,
            filename="red.png",
            content_type="image/png",
            skip_generation=True,
        )

        assert queue.jobs == []

    def test_rejected_upload_stores_nothing(self, test_db, blob_store, queue):
        with pytest.raises(UploadRejectedError):
            create_record(test_db, blob_store, queue, data=b"hello", filename="a.txt", content_type="text/plain")

        assert test_db.query(ImageRecord).count() == 0
        assert queue.jobs == []


class TestRecordEdits:
    """Tests for reading, editing and deleting records."""

    def test_get_missing(self, test_db):
        with pytest.raises(NotFoundError):
            get_record(test_db, 999)

    def test_list_newest_first(self, test_db, make_record):
        first = make_record(name="first")
        second = make_record(name="second")

        rows, total = list_records(test_db, limit=1)

        assert total == 2
        assert [row.id for row in rows] == [second.id]
        rows, _ = list_records(test_db, limit=1, offset=1)
        assert [row.id for row in rows] == [first.id]

    def test_update_leaves_embedding_alone(self, test_db, make_record, config):
        record = make_record(name="old", description="old", embedding=[0.0, 0.0, 1.0, 0.0])

        updated = update_record(test_db, record.id, description="  new description ")

        assert updated.name == "old"
        assert updated.description == "new description"
        assert VectorStore(test_db, config).get_embedding(record.id) == pytest.approx([0.0, 0.0, 1.0, 0.0])

    def test_delete_removes_row_and_blob(self, test_db, make_record, blob_store, config):
        record = make_record(name="gone", description="soon", embedding=[1.0, 0.0, 0.0, 0.0])
        record_id, file_key = record.id, record.file_key

        delete_record(test_db, blob_store, record_id)

        assert test_db.get(ImageRecord, record_id) is None
        with pytest.raises(BlobNotFoundError):
            blob_store.get(file_key)
        assert VectorStore(test_db, config).nearest_neighbors([1.0, 0.0, 0.0, 0.0], limit=5) == []

    def test_request_embedding(self, test_db, make_record, queue):
        record = make_record(name="n", description="d")

        request_embedding(test_db, queue, record.id)

        assert queue.names() == [TASK_GENERATE_EMBEDDING]
        with pytest.raises(NotFoundError):
            request_embedding(test_db, queue, record.id + 100)


class TestCaptionTask:
    """Tests for CaptionTask.run."""

    def test_fills_only_blank_fields(self, session_factory, blob_store, queue, make_record, test_db):
        """Test that a user-entered name survives captioning."""
        record = make_record(name="My cat")
        provider = FakeProvider(caption=Caption(name="Ginger Cat Sleeping", description="A cat asleep on a rug."))

        assert CaptionTask(session_factory, blob_store, provider, queue).run(record.id) is True

        test_db.expire_all()
        refreshed = test_db.get(ImageRecord, record.id)
        assert refreshed.name == "My cat"
        assert refreshed.description == "A cat asleep on a rug."
        assert queue.names() == [TASK_GENERATE_EMBEDDING]

    def test_nothing_to_fill(self, session_factory, blob_store, queue, make_record, provider):
        record = make_record(name="n", description="d")

        assert CaptionTask(session_factory, blob_store, provider, queue).run(record.id) is False
        assert provider.calls == []
        assert queue.jobs == []

    def test_provider_failure_leaves_record(self, session_factory, blob_store, queue, make_record, test_db):
        record = make_record()
        provider = FakeProvider(error=ProviderError("unavailable", status_code=503, retryable=True))

        assert CaptionTask(session_factory, blob_store, provider, queue).run(record.id) is False

        test_db.expire_all()
        assert test_db.get(ImageRecord, record.id).name is None
        assert queue.jobs == []

    def test_missing_record(self, session_factory, blob_store, queue, provider):
        assert CaptionTask(session_factory, blob_store, provider, queue).run(5555) is False
        assert provider.calls == []
