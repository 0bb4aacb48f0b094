"""Ollama client implementation.

This module provides the email classifier backed by a local Ollama server.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
import structlog

from onebox_sync.config import Settings
from onebox_sync.exceptions import ClassificationError
from onebox_sync.models import Category
from onebox_sync.utils import retry_async

logger = structlog.get_logger()

SYSTEM_PROMPT = """You are an expert email classifier. Your task is to analyze the provided email text and categorize it into one of the following labels:
- Interested: The sender shows genuine interest in the product/service or wants to proceed
- Meeting Booked: The sender has confirmed a meeting or appointment
- Not Interested: The sender explicitly declines or shows no interest
- Spam: The email is spam, promotional, or unsolicited
- Out of Office: The sender is out of office or auto-reply

Respond ONLY with a valid JSON object containing the category field, for example {"category": "Interested"}."""

# Bodies are truncated before prompting.
_MAX_BODY_CHARS = 4000


class OllamaClassifier:
    """Classifies emails into the closed label set using an Ollama model."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        retry_delay: float = 1.0,
    ) -> None:
        """Initialize the classifier.

        Args:
            settings: Application settings. If None, uses default settings.
            client: HTTP client to use. If None, one is created from settings.
            retry_delay: Initial delay between retries of a failed request.
        """
        from onebox_sync.config import get_settings

        self.settings = settings or get_settings()
        self._retry_delay = retry_delay
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.ollama_host,
            timeout=self.settings.ollama_timeout,
        )
        logger.info(
            "ollama_classifier_initialized",
            host=self.settings.ollama_host,
            model=self.settings.ollama_model,
        )

    async def classify(self, subject: str, body: str) -> Category:
        """Classify one email.

        Args:
            subject: Email subject.
            body: Email body text.

        Returns:
            The label chosen by the model.

        Raises:
            ClassificationError: If Ollama is unreachable or returns a label
                outside the closed set.
        """
        try:
            response = await retry_async(
                self._generate,
                f"Subject: {subject}\n\nBody: {body[:_MAX_BODY_CHARS]}",
                max_retries=self.settings.classifier_max_retries,
                delay=self._retry_delay,
                retry_on=(httpx.TransportError,),
            )
        except (httpx.HTTPError, ValueError) as exc:
            raise ClassificationError(f"Ollama request failed: {exc}") from exc

        if not isinstance(response, dict):
            raise ClassificationError("Ollama returned an unexpected payload")
        return _parse_category(response.get("response", ""))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _generate(self, prompt: str) -> dict[str, Any]:
        response = await self._client.post(
            "/api/generate",
            json={
                "model": self.settings.ollama_model,
                "system": SYSTEM_PROMPT,
                "prompt": prompt,
                "format": "json",
                "stream": False,
                "options": {"temperature": 0},
            },
        )
        response.raise_for_status()
        return response.json()


def _parse_category(text: Any) -> Category:
    if not isinstance(text, str) or not text.strip():
        raise ClassificationError("Ollama returned an empty response")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ClassificationError(f"Ollama returned invalid JSON: {text[:100]!r}") from exc

    label = payload.get("category") if isinstance(payload, dict) else None
    category = Category.coerce(label)
    if category is Category.UNCATEGORIZED:
        raise ClassificationError(f"Ollama returned an unknown category: {label!r}")
    return category
