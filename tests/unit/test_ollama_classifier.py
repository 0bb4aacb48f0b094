"""Unit tests for the Ollama classifier."""

import json

import httpx
import pytest

from onebox_sync.exceptions import ClassificationError
from onebox_sync.models import Category
from onebox_sync.ollama import OllamaClassifier


def _classifier(mock_settings, handler) -> OllamaClassifier:
    client = httpx.AsyncClient(
        base_url=mock_settings.ollama_host,
        transport=httpx.MockTransport(handler),
    )
    return OllamaClassifier(mock_settings, client=client, retry_delay=0.0)


def _reply(text: str) -> httpx.Response:
    return httpx.Response(200, json={"model": "test-model", "response": text, "done": True})


class TestOllamaClassifier:
    """Test suite for OllamaClassifier."""

    def test_ollama_classifier_initialization(self, mock_settings) -> None:
        """Test that the classifier is properly initialized."""
        classifier = OllamaClassifier(mock_settings)

        assert classifier.settings.ollama_host == "http://test:11434"

    @pytest.mark.asyncio
    async def test_classify_returns_category(self, mock_settings) -> None:
        """Test that the JSON category is returned and the request is well formed."""
        requests: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/generate"
            requests.append(json.loads(request.content))
            return _reply('{"category": "Meeting Booked"}')

        classifier = _classifier(mock_settings, handler)

        assert await classifier.classify("Confirmed", "See you Tuesday at 3pm") is Category.MEETING_BOOKED
        body = requests[0]
        assert body["model"] == "test-model"
        assert body["format"] == "json"
        assert body["stream"] is False
        assert "Subject: Confirmed" in body["prompt"]
        assert "See you Tuesday" in body["prompt"]

    @pytest.mark.asyncio
    async def test_unknown_label_raises(self, mock_settings) -> None:
        """Test that a label outside the closed set is a classification error."""
        classifier = _classifier(mock_settings, lambda request: _reply('{"category": "Maybe"}'))

        with pytest.raises(ClassificationError):
            await classifier.classify("s", "b")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "not json", "[1, 2]", '{"label": "Spam"}'])
    async def test_malformed_output_raises(self, mock_settings, text: str) -> None:
        """Test that malformed model output is a classification error."""
        classifier = _classifier(mock_settings, lambda request: _reply(text))

        with pytest.raises(ClassificationError):
            await classifier.classify("s", "b")

    @pytest.mark.asyncio
    async def test_http_error_raises(self, mock_settings) -> None:
        """Test that a server error is wrapped in ClassificationError."""
        classifier = _classifier(mock_settings, lambda request: httpx.Response(500))

        with pytest.raises(ClassificationError):
            await classifier.classify("s", "b")

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self, mock_settings) -> None:
        """Test that transport errors are retried before succeeding."""
        settings = mock_settings.model_copy(update={"classifier_max_retries": 1})
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise httpx.ConnectError("refused", request=request)
            return _reply('{"category": "Interested"}')

        classifier = _classifier(settings, handler)

        assert await classifier.classify("s", "b") is Category.INTERESTED
        assert attempts == 2

    @pytest.mark.asyncio
    async def test_aclose_keeps_injected_client_open(self, mock_settings) -> None:
        """Test that an injected HTTP client is not closed by the classifier."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: _reply("{}")))
        classifier = OllamaClassifier(mock_settings, client=client)

        await classifier.aclose()

        assert not client.is_closed
        await client.aclose()
