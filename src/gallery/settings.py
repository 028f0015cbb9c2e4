"""Application settings and environment configuration."""

from typing import Optional
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[2]
ENV_FILE = BASE_DIR / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_name: str = "Gallery"
    debug: bool = False
    worker_mode: bool = False
    environment: str = "dev"  # 'dev' or 'prod'

    # Database
    database_url: str = "postgresql://localhost/gallery"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800
    db_pool_pre_ping: bool = True
    db_connect_timeout: int = 10

    # Blob storage
    storage_backend: str = "local"  # 'local' or 'gcs'
    storage_local_root: str = str(BASE_DIR / "storage")
    storage_bucket_name: Optional[str] = None
    gcp_project_id: Optional[str] = None

    # Uploads
    upload_max_bytes: int = 10 * 1024 * 1024
    upload_rate_limit: str = "20/minute"

    # Embedding / caption provider (OpenAI-compatible HTTP API)
    embedding_api_base_url: str = "https://api.openai.com/v1"
    embedding_api_key: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"
    caption_model: str = "gpt-4o-mini"
    # Must match the vector column width; changing it requires re-embedding every record.
    embedding_dimension: int = 1536
    provider_request_timeout_seconds: float = 10.0
    provider_hard_timeout_seconds: float = 20.0
    provider_max_retries: int = 2
    provider_backoff_base_seconds: float = 0.5

    # Search
    search_page_size: int = 12
    search_cache_ttl_seconds: int = 300
    search_rate_limit: int = 10
    search_rate_window_seconds: int = 60
    similar_default_limit: int = 10
    similarity_index_ttl_seconds: int = 1800

    # Key-value store backing the search cache and rate limiter
    kv_backend: str = "memory"  # 'memory' or 'redis'
    redis_url: str = "redis://localhost:6379/0"

    # Worker
    worker_threads: int = 2
    worker_poll_seconds: float = 2.0
    worker_lease_seconds: int = 300
    task_max_attempts: int = 3

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    api_workers: int = 1

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "prod"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment.lower() == "dev"


settings = Settings()
