"""Base command class for shared CLI setup/teardown."""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from gallery.config import GalleryConfig
from gallery.database import get_engine_kwargs
from gallery.embeddings import OpenAIEmbeddingClient
from gallery.settings import settings
from gallery.storage import create_blob_store
from gallery.tasks import DatabaseTaskQueue


class CliCommand:
    """Base class for all CLI commands with shared setup/teardown."""

    def __init__(self):
        self.engine = None
        self.Session = None
        self.db = None
        self.config = GalleryConfig.from_settings(settings)

    def setup_db(self):
        """Initialize database connection."""
        self.engine = create_engine(
            settings.database_url,
            **get_engine_kwargs(),
        )
        self.Session = sessionmaker(bind=self.engine)
        self.db = self.Session()

    def cleanup_db(self):
        """Close database connection."""
        if self.db:
            self.db.close()
        if self.engine:
            self.engine.dispose()

    def build_provider(self) -> OpenAIEmbeddingClient:
        return OpenAIEmbeddingClient.from_settings(settings, config=self.config)

    def build_blob_store(self):
        return create_blob_store(settings)

    def build_queue(self) -> DatabaseTaskQueue:
        return DatabaseTaskQueue(self.Session)
