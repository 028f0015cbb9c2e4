"""Tests for the HTTP embedding provider client."""

import json

import httpx
import pytest

from gallery.embeddings import OpenAIEmbeddingClient, parse_caption
from gallery.errors import ProviderError, ProviderTimeoutError


def _embedding_reply(vector):
    return httpx.Response(200, json={"data": [{"embedding": vector, "index": 0}], "model": "test"})


def _caption_reply(content):
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


@pytest.fixture
def make_client(config, fake_clock):
    def _make(handler, **overrides):
        return OpenAIEmbeddingClient(
            api_key="sk-test",
            config=config.with_overrides(**overrides) if overrides else config,
            base_url="https://provider.test/v1",
            transport=httpx.MockTransport(handler),
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )

    return _make


class TestEmbedText:
    """Tests for OpenAIEmbeddingClient.embed_text."""

    def test_success(self, make_client):
        """Test request shape and vector parsing."""
        seen = []

        def handler(request):
            seen.append(request)
            return _embedding_reply([0.1, 0.2, 0.3, 0.4])

        client = make_client(handler)

        assert client.embed_text("snowy mountain") == [0.1, 0.2, 0.3, 0.4]
        assert len(seen) == 1
        assert seen[0].url.path == "/v1/embeddings"
        assert seen[0].headers["Authorization"] == "Bearer sk-test"
        body = json.loads(seen[0].content)
        assert body == {"model": "text-embedding-3-small", "input": "snowy mountain"}

    def test_retries_server_errors_with_backoff(self, make_client, fake_clock):
        """Test that 503 and 429 are retried with exponential backoff."""
        replies = iter([httpx.Response(503), httpx.Response(429), _embedding_reply([1, 0, 0, 0])])

        client = make_client(lambda request: next(replies))

        assert client.embed_text("x") == [1.0, 0.0, 0.0, 0.0]
        assert fake_clock.sleeps == [0.5, 1.0]

    def test_does_not_retry_client_errors(self, make_client, fake_clock):
        """Test that a 401 fails immediately as a permanent ProviderError."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, json={"error": "bad key"})

        client = make_client(handler)

        with pytest.raises(ProviderError) as exc_info:
            client.embed_text("x")
        assert exc_info.value.status_code == 401
        assert exc_info.value.retryable is False
        assert len(calls) == 1
        assert fake_clock.sleeps == []

    def test_exhausted_server_errors_raise_provider_error(self, make_client):
        """Test that persistent 5xx ends in a retryable ProviderError."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        client = make_client(handler)

        with pytest.raises(ProviderError) as exc_info:
            client.embed_text("x")
        assert exc_info.value.status_code == 500
        assert exc_info.value.retryable is True
        assert len(calls) == 3

    def test_timeouts_raise_provider_timeout(self, make_client):
        """Test that repeated read timeouts surface as ProviderTimeoutError."""
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("slow", request=request)

        client = make_client(handler)

        with pytest.raises(ProviderTimeoutError):
            client.embed_text("x")
        assert len(calls) == 3

    def test_hard_deadline_cuts_retries_short(self, make_client, fake_clock):
        """Test that backoff which would overrun the deadline stops retrying."""
        calls = []

        def handler(request):
            calls.append(request)
            fake_clock.advance(1.0)
            raise httpx.ConnectTimeout("down", request=request)

        client = make_client(handler, provider_hard_timeout_seconds=1.2)

        with pytest.raises(ProviderTimeoutError):
            client.embed_text("x")
        assert len(calls) == 1
        assert fake_clock.sleeps == []

    def test_late_reply_rejected(self, make_client, fake_clock):
        """Test that a reply arriving after the hard deadline is not used."""

        def handler(request):
            fake_clock.advance(5.0)
            return _embedding_reply([1, 0, 0, 0])

        client = make_client(handler)

        with pytest.raises(ProviderTimeoutError):
            client.embed_text("x")

    def test_transport_error_is_retried(self, make_client):
        """Test that a dropped connection is retried."""
        replies = iter([httpx.ConnectError("reset"), _embedding_reply([0, 0, 0, 1])])

        def handler(request):
            reply = next(replies)
            if isinstance(reply, Exception):
                raise reply
            return reply

        client = make_client(handler)

        assert client.embed_text("x") == [0.0, 0.0, 0.0, 1.0]

    @pytest.mark.parametrize("payload", [{}, {"data": []}, {"data": [{"embedding": None}]}, {"data": [{}]}])
    def test_malformed_payload(self, make_client, payload):
        """Test that an unexpected reply shape is a permanent ProviderError."""
        client = make_client(lambda request: httpx.Response(200, json=payload))

        with pytest.raises(ProviderError):
            client.embed_text("x")


class TestImageEmbedding:
    """Tests for captioning and image embedding."""

    def test_embed_image_captions_then_embeds(self, make_client, sample_image_data):
        """Test that the caption text is what gets embedded."""
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.path.endswith("/chat/completions"):
                return _caption_reply("Name: **Red Square Test Image**\nDescription: A solid red square.")
            return _embedding_reply([0.0, 1.0, 0.0, 0.0])

        client = make_client(handler)

        assert client.embed_image(sample_image_data) == [0.0, 1.0, 0.0, 0.0]
        caption_body = json.loads(seen[0].content)
        image_part = caption_body["messages"][0]["content"][1]
        assert image_part["image_url"]["url"].startswith("data:image/png;base64,")
        embed_body = json.loads(seen[1].content)
        assert embed_body["input"] == "Red Square Test Image A solid red square."

    def test_caption_and_embedding_share_one_deadline(self, make_client, fake_clock, sample_image_data):
        """Test that the embedding request only gets what the caption request left over."""
        timeouts = []

        def handler(request):
            timeouts.append(request.extensions["timeout"]["read"])
            fake_clock.advance(15.0)
            if request.url.path.endswith("/chat/completions"):
                return _caption_reply("Name: Red Square\nDescription: A red square.")
            return _embedding_reply([1.0, 0.0, 0.0, 0.0])

        client = make_client(handler, provider_request_timeout_seconds=30.0, provider_hard_timeout_seconds=20.0)

        with pytest.raises(ProviderTimeoutError):
            client.embed_image(sample_image_data)
        assert timeouts == [pytest.approx(20.0), pytest.approx(5.0)]

    def test_image_deadline_bounds_total_time(self, make_client, fake_clock, sample_image_data):
        """Test that a slow caption leaves no time for a second full request."""
        start = fake_clock()

        def handler(request):
            # Hang for the whole read timeout, as an unresponsive server would.
            fake_clock.advance(request.extensions["timeout"]["read"])
            raise httpx.ReadTimeout("slow", request=request)

        client = make_client(handler)

        with pytest.raises(ProviderTimeoutError):
            client.embed_image(sample_image_data)
        assert fake_clock() - start <= 3.0

    def test_unparseable_caption(self, make_client, sample_image_data):
        """Test that a reply without Name/Description lines is a ProviderError."""
        client = make_client(lambda request: _caption_reply("I see a red thing."))

        with pytest.raises(ProviderError):
            client.describe_image(sample_image_data)


class TestParseCaption:
    """Tests for parse_caption."""

    def test_strips_markdown_emphasis(self):
        caption = parse_caption("Name: *Sunset Over Calm Lake*\nDescription: **Orange sky.**\n")
        assert caption is not None
        assert caption.name == "Sunset Over Calm Lake"
        assert caption.description == "Orange sky."

    def test_missing_description(self):
        assert parse_caption("Name: Only a name") is None
