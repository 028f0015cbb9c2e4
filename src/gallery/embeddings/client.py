"""HTTP client for an OpenAI-compatible embedding and vision-caption API."""

from __future__ import annotations

import base64
from dataclasses import dataclass
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from gallery.config import GalleryConfig
from gallery.errors import ProviderError, ProviderTimeoutError
from gallery.settings import Settings, settings as default_settings


logger = logging.getLogger(__name__)

CAPTION_PROMPT = (
    "Please analyze this image and provide two things:\n"
    "1. A four-word name that summarizes the image contents (start with 'Name:')\n"
    "2. A detailed description of what you see in the image (start with 'Description:')"
)
CAPTION_MAX_TOKENS = 300

_NAME_PATTERN = re.compile(r"Name:\s*(.+?)(?:\n|$)")
_DESCRIPTION_PATTERN = re.compile(r"Description:\s*(.+?)(?:\n|$)")
_MARKDOWN_EMPHASIS = re.compile(r"^\*+\s*|\s*\*+$")


@dataclass(frozen=True)
class Caption:
    name: str
    description: str

    def as_text(self) -> str:
        return f"{self.name} {self.description}"


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Anything that maps text or image bytes into the gallery vector space."""

    def embed_text(self, text: str) -> List[float]:
        ...

    def embed_image(self, data: bytes) -> List[float]:
        ...


def sniff_image_mime(data: bytes) -> str:
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return "image/jpeg"


def parse_caption(content: str) -> Optional[Caption]:
    """Extract the Name:/Description: lines from a caption reply."""
    name_match = _NAME_PATTERN.search(content or "")
    description_match = _DESCRIPTION_PATTERN.search(content or "")
    if not name_match or not description_match:
        return None
    name = _MARKDOWN_EMPHASIS.sub("", name_match.group(1).strip())
    description = _MARKDOWN_EMPHASIS.sub("", description_match.group(1).strip())
    if not name or not description:
        return None
    return Caption(name=name, description=description)


class OpenAIEmbeddingClient:
    """Embedding provider backed by ``/embeddings`` and ``/chat/completions``.

    Every public call is bounded by ``config.provider_hard_timeout_seconds``,
    retries included. Only timeouts, transport errors, 429 and 5xx replies
    are retried.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str],
        config: GalleryConfig,
        base_url: str = "https://api.openai.com/v1",
        model: str = "text-embedding-3-small",
        caption_model: str = "gpt-4o-mini",
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.caption_model = caption_model
        self._sleep = sleep
        self._clock = clock
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(headers=headers, transport=transport)

    @classmethod
    def from_settings(cls, source: Settings | None = None, **kwargs) -> "OpenAIEmbeddingClient":
        s = source or default_settings
        return cls(
            api_key=s.embedding_api_key,
            config=kwargs.pop("config", None) or GalleryConfig.from_settings(s),
            base_url=s.embedding_api_base_url,
            model=s.embedding_model,
            caption_model=s.caption_model,
            **kwargs,
        )

    def close(self) -> None:
        self._client.close()

    # -- Public API ---------------------------------------------------------

    def embed_text(self, text: str) -> List[float]:
        return self._embed_text(text, self._new_deadline())

    def describe_image(self, data: bytes) -> Caption:
        return self._describe_image(data, self._new_deadline())

    def embed_image(self, data: bytes) -> List[float]:
        """Caption the image, then embed the caption so images share the text vector space.

        Both requests share one hard deadline.
        """
        deadline = self._new_deadline()
        caption = self._describe_image(data, deadline)
        return self._embed_text(caption.as_text(), deadline)

    # -- Requests -----------------------------------------------------------

    def _new_deadline(self) -> float:
        return self._clock() + float(self.config.provider_hard_timeout_seconds)

    def _embed_text(self, text: str, deadline: float) -> List[float]:
        payload = self._post_json("/embeddings", {"model": self.model, "input": text}, deadline)
        return self._parse_embedding(payload)

    def _describe_image(self, data: bytes, deadline: float) -> Caption:
        encoded = base64.b64encode(data).decode("ascii")
        request = {
            "model": self.caption_model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": CAPTION_PROMPT},
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:{sniff_image_mime(data)};base64,{encoded}",
                                "detail": "high",
                            },
                        },
                    ],
                }
            ],
            "max_tokens": CAPTION_MAX_TOKENS,
            "temperature": 0.1,
        }
        payload = self._post_json("/chat/completions", request, deadline)
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError("Caption response missing message content") from exc

        caption = parse_caption(str(content or ""))
        if caption is None:
            logger.warning("Could not parse caption reply: %r", content)
            raise ProviderError("Caption response did not contain Name/Description lines")
        return caption

    # -- Transport ----------------------------------------------------------

    def _parse_embedding(self, payload: Dict[str, Any]) -> List[float]:
        try:
            embedding = payload["data"][0]["embedding"]
            return [float(value) for value in embedding]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ProviderError("Embedding response missing data[0].embedding") from exc

    def _post_json(self, path: str, body: Dict[str, Any], deadline: float) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        max_retries = max(0, int(self.config.provider_max_retries))
        last_error: Exception | None = None

        for attempt in range(max_retries + 1):
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ProviderTimeoutError(f"Provider deadline exceeded calling {path}")
            # Caps every phase by the remaining budget; a reply past the deadline is rejected below.
            timeout = httpx.Timeout(min(float(self.config.provider_request_timeout_seconds), remaining))

            try:
                response = self._client.post(url, json=body, timeout=timeout)
            except httpx.TimeoutException as exc:
                logger.warning("Provider timeout on %s (attempt %s): %s", path, attempt + 1, exc)
                last_error = ProviderTimeoutError(f"Provider request to {path} timed out")
            except httpx.TransportError as exc:
                logger.warning("Provider transport error on %s (attempt %s): %s", path, attempt + 1, exc)
                last_error = ProviderError(f"Provider request to {path} failed: {exc}", retryable=True)
            else:
                if self._clock() > deadline:
                    raise ProviderTimeoutError(f"Provider reply for {path} arrived after the deadline")
                status = response.status_code
                if status == 429 or status >= 500:
                    logger.warning("Provider returned %s on %s (attempt %s)", status, path, attempt + 1)
                    last_error = ProviderError(
                        f"Provider error {status} for {path}: {response.text[:200]}",
                        status_code=status,
                        retryable=True,
                    )
                elif status >= 400:
                    raise ProviderError(
                        f"Provider error {status} for {path}: {response.text[:200]}",
                        status_code=status,
                    )
                else:
                    try:
                        payload = response.json()
                    except ValueError as exc:
                        raise ProviderError(f"Provider returned invalid JSON for {path}") from exc
                    if not isinstance(payload, dict):
                        raise ProviderError(f"Provider returned unexpected payload for {path}")
                    return payload

            if attempt < max_retries:
                delay = float(self.config.provider_backoff_base_seconds) * (2 ** attempt)
                if self._clock() + delay >= deadline:
                    raise ProviderTimeoutError(f"Provider deadline exceeded calling {path}")
                self._sleep(delay)

        assert last_error is not None
        raise last_error
