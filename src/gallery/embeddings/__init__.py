"""Embedding provider protocol and the HTTP client implementation."""

from .client import (
    CAPTION_PROMPT,
    Caption,
    EmbeddingProvider,
    OpenAIEmbeddingClient,
    parse_caption,
)

__all__ = [
    "CAPTION_PROMPT",
    "Caption",
    "EmbeddingProvider",
    "OpenAIEmbeddingClient",
    "parse_caption",
]
