"""Capabilities the sync engine consumes.

Each protocol names one external collaborator. The engine depends only on
these shapes; concrete adapters live in ``imap``, ``ollama``, ``notify``
and ``index``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import date
from typing import Any, Protocol

from onebox_sync.models import (
    AccountConfig,
    Category,
    ClassifiedEmail,
    EmailQuery,
    MailboxCursor,
    MailboxStatus,
    MessageRef,
    NormalizedEmail,
    RawMessage,
    SearchPage,
)


class MailboxClient(Protocol):
    """One connection to a remote mailbox.

    Every method raises ``TransportError`` on connection, authentication or
    protocol failures.
    """

    async def connect(self, account: AccountConfig) -> None: ...

    async def open_mailbox(self, name: str) -> MailboxStatus: ...

    async def search_since(self, since: date) -> list[MessageRef]: ...

    async def search_all(self) -> list[MessageRef]: ...

    async def search_after(self, uid: int) -> list[MessageRef]:
        """References with a UID strictly greater than ``uid``."""
        ...

    def fetch(self, refs: list[MessageRef]) -> AsyncGenerator[RawMessage, None]:
        """Stream the messages for ``refs`` in the order given."""
        ...

    async def watch(self, timeout: float) -> bool:
        """Block until new activity (True) or ``timeout`` seconds of quiet (False)."""
        ...

    async def renew_watch(self) -> None: ...

    async def close(self) -> None: ...


MailboxClientFactory = Callable[[], MailboxClient]


class MessageParser(Protocol):
    def parse(self, raw: RawMessage) -> NormalizedEmail: ...


class Classifier(Protocol):
    async def classify(self, subject: str, body: str) -> Category | str: ...


class SearchIndex(Protocol):
    """Document store keyed by email id; upsert must be atomic per id."""

    def upsert(self, email_id: str, record: dict[str, Any]) -> None: ...

    def get(self, email_id: str) -> ClassifiedEmail | None: ...

    def query(self, filters: EmailQuery, page: int = 1, limit: int = 20) -> SearchPage: ...

    def distinct_values(self, field: str, filters: EmailQuery | None = None) -> list[str]: ...

    def update_field(self, email_id: str, field: str, value: Any) -> bool: ...


class Notifier(Protocol):
    async def notify(self, email: ClassifiedEmail) -> None: ...


class KnowledgeRetriever(Protocol):
    """Vector retrieval used by reply drafting, outside the sync core."""

    async def retrieve_similar(self, text: str, k: int = 3) -> list[dict[str, Any]]: ...


class CursorStore(Protocol):
    def load(self, account_id: str, folder: str) -> MailboxCursor | None: ...

    def save(self, account_id: str, cursor: MailboxCursor) -> None: ...
