"""Ingestion pipeline: parse -> classify -> index -> notify.

The same pipeline handles backfilled and live messages. It has
fire-and-continue semantics: every stage failure is contained to the
message being processed, so a bad message can never abort its siblings or
disturb the session that fetched it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass

import structlog

from onebox_sync.exceptions import ParseError
from onebox_sync.models import Category, ClassifiedEmail, NormalizedEmail, RawMessage
from onebox_sync.ports import Classifier, MessageParser, Notifier, SearchIndex

logger = structlog.get_logger()


@dataclass
class PipelineStats:
    """Counters for messages that went through the pipeline."""

    processed: int = 0
    dropped: int = 0
    classification_failures: int = 0
    index_failures: int = 0
    notifications: int = 0
    notify_failures: int = 0


class IngestionPipeline:
    """Turns raw messages into classified, indexed and (maybe) notified records."""

    def __init__(
        self,
        parser: MessageParser,
        classifier: Classifier,
        index: SearchIndex,
        notifiers: Sequence[Notifier] = (),
    ) -> None:
        self._parser = parser
        self._classifier = classifier
        self._index = index
        self._notifiers = list(notifiers)
        self._notified_ids: set[str] = set()
        self.stats = PipelineStats()

    @property
    def notified_ids(self) -> frozenset[str]:
        return frozenset(self._notified_ids)

    async def process(
        self,
        raw: RawMessage,
        stop_event: asyncio.Event | None = None,
    ) -> ClassifiedEmail | None:
        """Run one message through every stage.

        Args:
            raw: The fetched message.
            stop_event: Shutdown signal checked between stages; once set, no
                further stage runs for this message.

        Returns:
            The classified email, or None if it was dropped or abandoned.
        """
        log = logger.bind(account_id=raw.account_id, uid=raw.uid)

        if _stopped(stop_event):
            return None

        try:
            email = self._parser.parse(raw)
        except ParseError as exc:
            self.stats.dropped += 1
            log.warning("message_parse_failed", error=str(exc))
            return None
        except Exception as exc:  # noqa: BLE001
            self.stats.dropped += 1
            log.warning("message_parse_failed", error=str(exc), error_type=type(exc).__name__)
            return None

        if _stopped(stop_event):
            return None

        category = await self._classify(email)
        classified = ClassifiedEmail.from_normalized(email, category)

        if _stopped(stop_event):
            return None

        await self._upsert(classified)

        if _stopped(stop_event):
            return None

        await self._notify(classified)

        self.stats.processed += 1
        log.info(
            "email_ingested",
            email_id=classified.id,
            subject=classified.subject,
            sender=classified.from_,
            category=classified.category.value,
        )
        return classified

    async def _classify(self, email: NormalizedEmail) -> Category:
        try:
            label = await self._classifier.classify(email.subject, email.body)
        except Exception as exc:  # noqa: BLE001
            self.stats.classification_failures += 1
            logger.warning(
                "email_classification_failed",
                email_id=email.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return Category.UNCATEGORIZED

        category = Category.coerce(label)
        if category is Category.UNCATEGORIZED and label != Category.UNCATEGORIZED.value:
            self.stats.classification_failures += 1
            logger.warning("email_classification_malformed", email_id=email.id, label=repr(label))
        return category

    async def _upsert(self, email: ClassifiedEmail) -> None:
        try:
            await asyncio.to_thread(self._index.upsert, email.id, email.to_record())
        except Exception as exc:  # noqa: BLE001
            self.stats.index_failures += 1
            logger.error(
                "email_index_failed",
                email_id=email.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def _notify(self, email: ClassifiedEmail) -> None:
        if email.category is not Category.INTERESTED or not self._notifiers:
            return
        if email.id in self._notified_ids:
            logger.debug("notification_already_sent", email_id=email.id)
            return
        # Claimed before dispatch so a concurrent duplicate cannot notify twice.
        self._notified_ids.add(email.id)

        results = await asyncio.gather(
            *(sink.notify(email) for sink in self._notifiers),
            return_exceptions=True,
        )
        for sink, result in zip(self._notifiers, results):
            sink_name = type(sink).__name__
            if isinstance(result, BaseException):
                self.stats.notify_failures += 1
                logger.error(
                    "notification_failed",
                    email_id=email.id,
                    sink=sink_name,
                    error=str(result),
                )
            else:
                self.stats.notifications += 1
                logger.info("notification_sent", email_id=email.id, sink=sink_name)


def _stopped(stop_event: asyncio.Event | None) -> bool:
    return stop_event is not None and stop_event.is_set()
