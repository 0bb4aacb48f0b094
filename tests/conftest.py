"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import date, datetime, timezone
from email.message import EmailMessage
from email.utils import format_datetime
from typing import Any

import pytest
import structlog

from onebox_sync.exceptions import TransportError
from onebox_sync.models import (
    AccountConfig,
    Category,
    ClassifiedEmail,
    EmailQuery,
    MailboxStatus,
    MessageRef,
    RawMessage,
    SearchPage,
    SessionState,
)


@pytest.fixture(autouse=True)
def _reset_logging():
    """Send log output to stderr and undo any configuration done by the code under test."""
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr))
    yield
    structlog.reset_defaults()


@pytest.fixture
def mock_settings():
    """Provide mock settings for testing."""
    from onebox_sync.config import Settings

    return Settings(
        ollama_host="http://test:11434",
        ollama_model="test-model",
        classifier_max_retries=0,
        log_level="DEBUG",
        debug=True,
    )


def build_message(
    *,
    subject: str | None = "Hello",
    sender: str = "Lead <lead@example.com>",
    to: str = "a@x.com",
    message_id: str | None = "<m1@example.com>",
    sent_at: datetime | None = None,
    text: str | None = "Sounds great, let's talk next week.",
    html: str | None = None,
    attachment: bytes | None = None,
) -> bytes:
    """Build RFC 822 bytes for a test message."""
    message = EmailMessage()
    if subject is not None:
        message["Subject"] = subject
    message["From"] = sender
    message["To"] = to
    if message_id is not None:
        message["Message-ID"] = message_id
    message["Date"] = format_datetime(sent_at or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))

    if text is not None:
        message.set_content(text)
        if html is not None:
            message.add_alternative(html, subtype="html")
    elif html is not None:
        message.set_content(html, subtype="html")
    else:
        message.set_content("")

    if attachment is not None:
        message.add_attachment(
            attachment,
            maintype="application",
            subtype="octet-stream",
            filename="report.bin",
        )
    return message.as_bytes()


@pytest.fixture
def message_factory() -> Callable[..., bytes]:
    return build_message


@pytest.fixture
def account() -> AccountConfig:
    return AccountConfig(user="a@x.com", password="secret", host="imap.example.com")


class FakeMailboxServer:
    """Mailbox state shared by every client a session creates."""

    def __init__(self, uidvalidity: int = 1) -> None:
        self.uidvalidity = uidvalidity
        self.messages: dict[int, tuple[date, bytes]] = {}
        self.connect_failures = 0
        self.renew_failures = 0
        self.watch_failures = 0
        self.connects = 0
        self.renewals = 0
        self.closes = 0
        self.search_since_calls: list[date] = []
        self.fetched: list[int] = []
        self.search_after_calls: list[int] = []
        self.watch_timeouts: list[float] = []
        self.watch_started: list[float] = []
        self.renewed_at: list[float] = []
        self.activity = asyncio.Event()

    def add(self, uid: int, data: bytes, received: date) -> None:
        self.messages[uid] = (received, data)

    def deliver(self, uid: int, data: bytes, received: date) -> None:
        """Add a message and wake any watcher."""
        self.add(uid, data, received)
        self.activity.set()

    def client(self, account: AccountConfig | None = None) -> "FakeMailboxClient":
        return FakeMailboxClient(self)


class FakeMailboxClient:
    """In-memory MailboxClient driven by a FakeMailboxServer."""

    def __init__(self, server: FakeMailboxServer) -> None:
        self.server = server
        self.account: AccountConfig | None = None
        self.closed = False

    async def connect(self, account: AccountConfig) -> None:
        self.server.connects += 1
        if self.server.connect_failures > 0:
            self.server.connect_failures -= 1
            raise TransportError("connection refused")
        self.account = account

    async def open_mailbox(self, name: str) -> MailboxStatus:
        return MailboxStatus(uidvalidity=self.server.uidvalidity, exists=len(self.server.messages))

    async def search_since(self, since: date) -> list[MessageRef]:
        self.server.search_since_calls.append(since)
        return [
            MessageRef(uid=uid)
            for uid, (received, _) in sorted(self.server.messages.items())
            if received >= since
        ]

    async def search_all(self) -> list[MessageRef]:
        return [MessageRef(uid=uid) for uid in sorted(self.server.messages)]

    async def search_after(self, uid: int) -> list[MessageRef]:
        self.server.search_after_calls.append(uid)
        return [MessageRef(uid=found) for found in sorted(self.server.messages) if found > uid]

    async def fetch(self, refs: list[MessageRef]) -> AsyncGenerator[RawMessage, None]:
        assert self.account is not None
        for ref in refs:
            if ref.uid not in self.server.messages:
                continue
            await asyncio.sleep(0)
            self.server.fetched.append(ref.uid)
            yield RawMessage(
                account_id=self.account.account_id,
                folder=self.account.mailbox,
                uid=ref.uid,
                data=self.server.messages[ref.uid][1],
            )

    async def watch(self, timeout: float) -> bool:
        loop = asyncio.get_running_loop()
        self.server.watch_timeouts.append(timeout)
        self.server.watch_started.append(loop.time())
        if self.server.watch_failures > 0:
            self.server.watch_failures -= 1
            raise TransportError("connection reset during IDLE")
        try:
            await asyncio.wait_for(self.server.activity.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        self.server.activity.clear()
        return True

    async def renew_watch(self) -> None:
        self.server.renewals += 1
        self.server.renewed_at.append(asyncio.get_running_loop().time())
        if self.server.renew_failures > 0:
            self.server.renew_failures -= 1
            raise TransportError("IDLE renewal rejected")

    async def close(self) -> None:
        self.closed = True
        self.server.closes += 1


@pytest.fixture
def mailbox_server() -> FakeMailboxServer:
    return FakeMailboxServer()


class FakeClassifier:
    """Returns a fixed label, optionally blocking until released."""

    def __init__(self, label: Category | str = Category.INTERESTED) -> None:
        self.label = label
        self.calls: list[tuple[str, str]] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def classify(self, subject: str, body: str) -> Category | str:
        self.calls.append((subject, body))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.label


class FakeIndex:
    """Dict-backed SearchIndex."""

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.upserts = 0
        self.error: Exception | None = None

    def upsert(self, email_id: str, record: dict[str, Any]) -> None:
        if self.error is not None:
            raise self.error
        self.upserts += 1
        self.records[email_id] = record

    def get(self, email_id: str) -> ClassifiedEmail | None:
        record = self.records.get(email_id)
        return ClassifiedEmail.model_validate(record) if record else None

    def query(self, filters: EmailQuery, page: int = 1, limit: int = 20) -> SearchPage:
        items = [ClassifiedEmail.model_validate(record) for record in self.records.values()]
        return SearchPage(total=len(items), items=items[(page - 1) * limit : page * limit], page=page, limit=limit)

    def distinct_values(self, field: str, filters: EmailQuery | None = None) -> list[str]:
        return sorted({str(record[field]) for record in self.records.values()})

    def update_field(self, email_id: str, field: str, value: Any) -> bool:
        if email_id not in self.records:
            return False
        self.records[email_id][field] = value
        return True


class FakeNotifier:
    def __init__(self, error: Exception | None = None) -> None:
        self.sent: list[ClassifiedEmail] = []
        self.error = error

    async def notify(self, email: ClassifiedEmail) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append(email)


class MemoryCursorStore:
    def __init__(self) -> None:
        self.cursors: dict[tuple[str, str], Any] = {}

    def load(self, account_id: str, folder: str):
        return self.cursors.get((account_id, folder))

    def save(self, account_id: str, cursor) -> None:
        self.cursors[(account_id, cursor.folder)] = cursor


@pytest.fixture
def classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture
def fake_index() -> FakeIndex:
    return FakeIndex()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def cursor_store() -> MemoryCursorStore:
    return MemoryCursorStore()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


async def wait_for_state(session: Any, state: SessionState, timeout: float = 2.0) -> None:
    await wait_until(lambda: session.state is state, timeout)


async def run_briefly(coro: Awaitable[Any], timeout: float = 2.0) -> Any:
    return await asyncio.wait_for(coro, timeout)
