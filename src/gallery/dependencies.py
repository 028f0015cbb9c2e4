"""Shared dependencies for FastAPI endpoints, the CLI, and the worker."""

from functools import lru_cache
from typing import Callable, Dict

from sqlalchemy.orm import Session

from gallery.captioning import CaptionTask
from gallery.config import GalleryConfig
from gallery.database import SessionLocal, get_db
from gallery.embeddings import OpenAIEmbeddingClient
from gallery.generation import EmbeddingPipeline
from gallery.kvstore import KeyValueStore, create_kv_store
from gallery.ratelimit import RateLimiter
from gallery.search import SearchCache, SearchEngine
from gallery.settings import settings
from gallery.storage import BlobStore, create_blob_store
from gallery.tasks import (
    TASK_GENERATE_CAPTION,
    TASK_GENERATE_EMBEDDING,
    DatabaseTaskQueue,
    NonRetryableTaskError,
    TaskHandler,
    TaskQueue,
)


@lru_cache
def get_config() -> GalleryConfig:
    return GalleryConfig.from_settings(settings)


@lru_cache
def get_blob_store() -> BlobStore:
    return create_blob_store(settings)


@lru_cache
def get_embedding_provider() -> OpenAIEmbeddingClient:
    return OpenAIEmbeddingClient.from_settings(settings, config=get_config())


@lru_cache
def get_kv_store() -> KeyValueStore:
    return create_kv_store(settings)


def get_task_queue() -> TaskQueue:
    return DatabaseTaskQueue(SessionLocal)


@lru_cache
def get_search_engine() -> SearchEngine:
    config = get_config()
    store = get_kv_store()
    return SearchEngine(
        session_factory=SessionLocal,
        provider=get_embedding_provider(),
        cache=SearchCache(store, config.cache_ttl_seconds),
        rate_limiter=RateLimiter(store, config.rate_limit, config.rate_window_seconds),
        config=config,
    )


def _record_id_from(payload: dict) -> int:
    try:
        return int(payload["record_id"])
    except (KeyError, TypeError, ValueError) as exc:
        raise NonRetryableTaskError(f"Invalid record_id in payload: {payload!r}") from exc


def build_task_handlers(
    session_factory: Callable[[], Session],
    blob_store: BlobStore,
    provider,
    config: GalleryConfig,
    queue: TaskQueue,
) -> Dict[str, TaskHandler]:
    """Map queue task names to callables taking the job payload."""
    pipeline = EmbeddingPipeline(session_factory, blob_store, provider, config)
    captioner = CaptionTask(session_factory, blob_store, provider, queue)

    def generate_embedding(payload: dict) -> str:
        return pipeline.run(_record_id_from(payload)).value

    def generate_caption(payload: dict) -> str:
        return "captioned" if captioner.run(_record_id_from(payload)) else "skipped"

    return {
        TASK_GENERATE_EMBEDDING: generate_embedding,
        TASK_GENERATE_CAPTION: generate_caption,
    }


def get_task_handlers() -> Dict[str, TaskHandler]:
    return build_task_handlers(
        SessionLocal,
        get_blob_store(),
        get_embedding_provider(),
        get_config(),
        get_task_queue(),
    )


__all__ = [
    "build_task_handlers",
    "get_blob_store",
    "get_config",
    "get_db",
    "get_embedding_provider",
    "get_kv_store",
    "get_search_engine",
    "get_task_handlers",
    "get_task_queue",
]
