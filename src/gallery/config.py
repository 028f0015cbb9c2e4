"""Explicit runtime configuration passed into the search and embedding components."""

from __future__ import annotations

from dataclasses import dataclass, replace

from gallery.settings import Settings, settings as default_settings


EMBEDDING_DIMENSION = 1536


@dataclass(frozen=True)
class GalleryConfig:
    """Process-wide knobs for the embedding and similarity-search core.

    Components receive an instance in their constructor instead of reading
    module globals, so tests can run with e.g. a 4-dimensional vector space.
    """

    embedding_dimension: int = EMBEDDING_DIMENSION
    page_size: int = 12
    cache_ttl_seconds: int = 300
    rate_limit: int = 10
    rate_window_seconds: int = 60
    similar_default_limit: int = 10
    similarity_index_ttl_seconds: int = 1800
    provider_request_timeout_seconds: float = 10.0
    provider_hard_timeout_seconds: float = 20.0
    provider_max_retries: int = 2
    provider_backoff_base_seconds: float = 0.5

    def __post_init__(self) -> None:
        if self.embedding_dimension <= 0:
            raise ValueError("embedding_dimension must be positive")
        if self.page_size <= 0:
            raise ValueError("page_size must be positive")
        if self.rate_limit <= 0 or self.rate_window_seconds <= 0:
            raise ValueError("rate limit and window must be positive")
        if self.provider_hard_timeout_seconds <= 0:
            raise ValueError("provider_hard_timeout_seconds must be positive")

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "GalleryConfig":
        s = source or default_settings
        return cls(
            embedding_dimension=s.embedding_dimension,
            page_size=s.search_page_size,
            cache_ttl_seconds=s.search_cache_ttl_seconds,
            rate_limit=s.search_rate_limit,
            rate_window_seconds=s.search_rate_window_seconds,
            similar_default_limit=s.similar_default_limit,
            similarity_index_ttl_seconds=s.similarity_index_ttl_seconds,
            provider_request_timeout_seconds=s.provider_request_timeout_seconds,
            provider_hard_timeout_seconds=s.provider_hard_timeout_seconds,
            provider_max_retries=s.provider_max_retries,
            provider_backoff_base_seconds=s.provider_backoff_base_seconds,
        )

    def with_overrides(self, **changes) -> "GalleryConfig":
        return replace(self, **changes)
