"""Notification sinks for interested leads.

Each sink delivers one event per interested email and raises
``NotifyError`` when delivery fails; the pipeline logs failures per sink.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from onebox_sync.config import Settings
from onebox_sync.exceptions import NotifyError
from onebox_sync.models import ClassifiedEmail

logger = structlog.get_logger()

PREVIEW_CHARS = 200
LEAD_TITLE = "New Interested Lead"
LEAD_EVENT = "InterestedLead"


class _HttpSink:
    """Posts JSON payloads to a single URL."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def notify(self, email: ClassifiedEmail) -> None:
        payload = self.build_payload(email)
        try:
            response = await self._client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NotifyError(f"{type(self).__name__} delivery failed: {exc}") from exc
        logger.info("lead_notification_delivered", sink=type(self).__name__, email_id=email.id)

    def build_payload(self, email: ClassifiedEmail) -> dict[str, Any]:
        raise NotImplementedError

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class SlackNotifier(_HttpSink):
    """Slack incoming webhook receiving a block message per lead."""

    def build_payload(self, email: ClassifiedEmail) -> dict[str, Any]:
        preview = email.body[:PREVIEW_CHARS]
        if len(email.body) > PREVIEW_CHARS:
            preview += "..."
        return {
            "text": LEAD_TITLE,
            "blocks": [
                {
                    "type": "header",
                    "text": {"type": "plain_text", "text": LEAD_TITLE, "emoji": True},
                },
                {
                    "type": "section",
                    "fields": [
                        {"type": "mrkdwn", "text": f"*From:*\n{email.from_}"},
                        {"type": "mrkdwn", "text": f"*Account:*\n{email.account_id}"},
                    ],
                },
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": f"*Subject:*\n{email.subject}"},
                },
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": f"*Preview:*\n{preview}"},
                },
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": f"*Date:*\n{email.date.isoformat()}"},
                },
            ],
        }


class WebhookNotifier(_HttpSink):
    """Generic webhook receiving an ``InterestedLead`` event."""

    def build_payload(self, email: ClassifiedEmail) -> dict[str, Any]:
        return {
            "event": LEAD_EVENT,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "email": {
                "id": email.id,
                "from": email.from_,
                "to": email.to,
                "subject": email.subject,
                "body": email.body,
                "date": email.date.isoformat(),
                "accountId": email.account_id,
                "folder": email.folder,
                "category": email.category.value,
            },
        }


def build_notifiers(settings: Settings) -> list[SlackNotifier | WebhookNotifier]:
    """Create a sink for every notification URL configured in ``settings``."""
    notifiers: list[SlackNotifier | WebhookNotifier] = []
    if settings.slack_webhook_url:
        notifiers.append(SlackNotifier(settings.slack_webhook_url, timeout=settings.notify_timeout))
    if settings.webhook_url:
        notifiers.append(WebhookNotifier(settings.webhook_url, timeout=settings.notify_timeout))
    if not notifiers:
        logger.warning("no_notification_sinks_configured")
    return notifiers
