"""Unit tests for the imapclient-backed mailbox client."""

from __future__ import annotations

from datetime import date

import pytest
from imapclient.exceptions import IMAPClientError, LoginError

from onebox_sync.exceptions import TransportError
from onebox_sync.imap import ImapMailboxClient
from onebox_sync.models import AccountConfig, MessageRef


class FakeIMAP:
    """Stands in for imapclient.IMAPClient."""

    def __init__(self, host, port=None, ssl=True, timeout=None, use_uid=True) -> None:
        self.args = {"host": host, "port": port, "ssl": ssl, "timeout": timeout, "use_uid": use_uid}
        self.calls: list[object] = []
        self.idle_responses: list[list[tuple]] = []
        self.search_error: Exception | None = None
        self.missing: set[int] = set()

    def login(self, user, password):
        self.calls.append(("login", user, password))
        if user == "bad@x.com":
            raise LoginError("[AUTHENTICATIONFAILED] Invalid credentials")

    def select_folder(self, name, readonly=False):
        self.calls.append(("select", name, readonly))
        return {b"UIDVALIDITY": 42, b"EXISTS": 3}

    def search(self, criteria):
        self.calls.append(("search", criteria))
        if self.search_error is not None:
            raise self.search_error
        return [3, 1, 2]

    def fetch(self, uids, items):
        self.calls.append(("fetch", list(uids), items))
        return {uid: {b"BODY[]": f"message {uid}".encode()} for uid in uids if uid not in self.missing}

    def idle(self):
        self.calls.append("idle")

    def idle_check(self, timeout):
        self.calls.append(("idle_check", timeout))
        return self.idle_responses.pop(0) if self.idle_responses else []

    def idle_done(self):
        self.calls.append("idle_done")
        return b"Idle terminated", []

    def logout(self):
        self.calls.append("logout")

    def shutdown(self):
        self.calls.append("shutdown")


@pytest.fixture
def imap_account() -> AccountConfig:
    return AccountConfig(user="a@x.com", password="secret", host="imap.x.com", port=993)


@pytest.fixture
def created() -> list[FakeIMAP]:
    return []


@pytest.fixture
def client(created: list[FakeIMAP]) -> ImapMailboxClient:
    def factory(*args, **kwargs) -> FakeIMAP:
        imap = FakeIMAP(*args, **kwargs)
        created.append(imap)
        return imap

    return ImapMailboxClient(timeout=12.0, fetch_batch_size=2, client_cls=factory)


class TestImapMailboxClient:
    """Test suite for ImapMailboxClient."""

    @pytest.mark.asyncio
    async def test_connect_and_open_mailbox(self, client, created, imap_account) -> None:
        """Test that connect logs in over SSL and open_mailbox reports UIDVALIDITY."""
        await client.connect(imap_account)
        status = await client.open_mailbox("INBOX")

        imap = created[0]
        assert imap.args == {
            "host": "imap.x.com",
            "port": 993,
            "ssl": True,
            "timeout": 12.0,
            "use_uid": True,
        }
        assert ("login", "a@x.com", "secret") in imap.calls
        assert ("select", "INBOX", True) in imap.calls
        assert status.uidvalidity == 42
        assert status.exists == 3

    @pytest.mark.asyncio
    async def test_login_failure_is_transport_error(self, client, created) -> None:
        """Test that rejected credentials raise TransportError and drop the socket."""
        account = AccountConfig(user="bad@x.com", password="nope", host="imap.x.com")

        with pytest.raises(TransportError):
            await client.connect(account)
        assert created[0].calls[-1] == "shutdown"

    @pytest.mark.asyncio
    async def test_unreachable_server_is_transport_error(self, imap_account) -> None:
        """Test that socket errors while connecting raise TransportError."""

        def refuse(*args, **kwargs):
            raise ConnectionRefusedError("connection refused")

        client = ImapMailboxClient(client_cls=refuse)

        with pytest.raises(TransportError):
            await client.connect(imap_account)

    @pytest.mark.asyncio
    async def test_search(self, client, created, imap_account) -> None:
        """Test that searches return sorted message references."""
        await client.connect(imap_account)

        assert await client.search_all() == [MessageRef(uid=1), MessageRef(uid=2), MessageRef(uid=3)]
        await client.search_since(date(2024, 5, 31))

        assert ("search", "ALL") in created[0].calls
        assert ("search", ["SINCE", date(2024, 5, 31)]) in created[0].calls

    @pytest.mark.asyncio
    async def test_search_after_uid(self, client, created, imap_account) -> None:
        """Test that only UIDs above the given one are requested and returned."""
        await client.connect(imap_account)

        assert await client.search_after(2) == [MessageRef(uid=3)]
        assert ("search", ["UID", "3:*"]) in created[0].calls

    @pytest.mark.asyncio
    async def test_protocol_error_is_transport_error(self, client, created, imap_account) -> None:
        """Test that imapclient errors are wrapped in TransportError."""
        await client.connect(imap_account)
        created[0].search_error = IMAPClientError("SEARCH failed")

        with pytest.raises(TransportError):
            await client.search_all()

    @pytest.mark.asyncio
    async def test_fetch_in_batches_skips_missing(self, client, created, imap_account) -> None:
        """Test that fetch streams in order, batches requests and skips expunged UIDs."""
        await client.connect(imap_account)
        await client.open_mailbox("INBOX")
        created[0].missing = {2}

        refs = [MessageRef(uid=uid) for uid in (1, 2, 3)]
        messages = [raw async for raw in client.fetch(refs)]

        assert [raw.uid for raw in messages] == [1, 3]
        assert messages[0].data == b"message 1"
        assert messages[0].account_id == "a@x.com"
        assert messages[0].folder == "INBOX"
        fetches = [call for call in created[0].calls if isinstance(call, tuple) and call[0] == "fetch"]
        assert [call[1] for call in fetches] == [[1, 2], [3]]

    @pytest.mark.asyncio
    async def test_fetch_requires_connection(self, client) -> None:
        """Test that fetching without a connection raises TransportError."""
        with pytest.raises(TransportError):
            [raw async for raw in client.fetch([MessageRef(uid=1)])]

    @pytest.mark.asyncio
    async def test_watch_reports_activity(self, client, created, imap_account) -> None:
        """Test that IDLE is entered once and left when new mail arrives."""
        await client.connect(imap_account)
        imap = created[0]
        imap.idle_responses = [[(b"OK", b"Still here")], [(4, b"EXISTS")]]

        assert await client.watch(0.5) is False
        assert client.idling
        assert await client.watch(0.5) is True
        assert not client.idling

        assert imap.calls.count("idle") == 1
        assert imap.calls.count("idle_done") == 1

    @pytest.mark.asyncio
    async def test_commands_leave_idle_first(self, client, created, imap_account) -> None:
        """Test that a command issued while idling ends IDLE before running."""
        await client.connect(imap_account)
        imap = created[0]
        await client.watch(0.1)

        await client.search_all()

        assert imap.calls[-2:] == ["idle_done", ("search", "ALL")]

    @pytest.mark.asyncio
    async def test_renew_watch_reissues_idle(self, client, created, imap_account) -> None:
        """Test that renewal ends the current IDLE and starts a new one."""
        await client.connect(imap_account)
        imap = created[0]
        await client.watch(0.1)

        await client.renew_watch()

        assert imap.calls[-2:] == ["idle_done", "idle"]
        assert client.idling

    @pytest.mark.asyncio
    async def test_close_logs_out(self, client, created, imap_account) -> None:
        """Test that close ends IDLE and logs out once."""
        await client.connect(imap_account)
        imap = created[0]
        await client.watch(0.1)

        await client.close()
        await client.close()

        assert imap.calls[-2:] == ["idle_done", "logout"]
        assert imap.calls.count("logout") == 1
