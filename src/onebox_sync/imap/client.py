"""IMAP client implementation.

This module provides a MailboxClient backed by ``imapclient``. The library
is blocking, so every call runs in a worker thread; a thread lock keeps
commands on one connection strictly sequential even when the coroutine
that issued a call has been cancelled.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncGenerator, Callable
from datetime import date
from typing import Any, TypeVar

import structlog
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError

from onebox_sync.exceptions import TransportError
from onebox_sync.models import AccountConfig, MailboxStatus, MessageRef, RawMessage

logger = structlog.get_logger()

T = TypeVar("T")

_ACTIVITY_RESPONSES = frozenset({b"EXISTS", b"RECENT"})
# BODY.PEEK leaves the \Seen flag untouched; the server answers under BODY[].
_FETCH_ITEM = "BODY.PEEK[]"
_FETCH_KEY = b"BODY[]"


class ImapMailboxClient:
    """One IMAP connection for one account.

    A new instance is created for every connect attempt; instances are not
    reused after :meth:`close`.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        fetch_batch_size: int = 25,
        client_cls: Callable[..., Any] | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            timeout: Socket timeout for every IMAP command in seconds.
            fetch_batch_size: Number of messages requested per FETCH command.
            client_cls: IMAPClient-compatible class. If None, uses IMAPClient.
        """
        self._timeout = timeout
        self._fetch_batch_size = max(1, fetch_batch_size)
        self._client_cls = client_cls or IMAPClient
        self._imap: Any | None = None
        self._account: AccountConfig | None = None
        self._folder: str | None = None
        self._idling = False
        self._lock = threading.Lock()

    @property
    def idling(self) -> bool:
        return self._idling

    async def connect(self, account: AccountConfig) -> None:
        """Open the connection and log in.

        Raises:
            TransportError: If the server is unreachable or rejects the login.
        """
        self._account = account

        def _connect() -> Any:
            imap = self._client_cls(
                account.host,
                port=account.port,
                ssl=account.use_ssl,
                timeout=self._timeout,
                use_uid=True,
            )
            try:
                imap.login(account.user, account.password.get_secret_value())
            except LoginError:
                imap.shutdown()
                raise
            return imap

        self._imap = await self._run(_connect)
        logger.info(
            "imap_connected",
            account_id=account.account_id,
            host=account.host,
            port=account.port,
        )

    async def open_mailbox(self, name: str) -> MailboxStatus:
        """Select ``name`` read-only and report its UIDVALIDITY."""

        def _select() -> dict[bytes, Any]:
            self._leave_idle()
            return self._require().select_folder(name, readonly=True)

        info = await self._run(_select)
        self._folder = name
        try:
            uidvalidity = int(info[b"UIDVALIDITY"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TransportError(f"Server did not report UIDVALIDITY for {name}") from exc
        return MailboxStatus(uidvalidity=uidvalidity, exists=int(info.get(b"EXISTS", 0) or 0))

    async def search_since(self, since: date) -> list[MessageRef]:
        return await self._search(["SINCE", since])

    async def search_all(self) -> list[MessageRef]:
        return await self._search("ALL")

    async def search_after(self, uid: int) -> list[MessageRef]:
        # "n:*" always matches the highest UID, even when it is below n.
        refs = await self._search(["UID", f"{uid + 1}:*"])
        return [ref for ref in refs if ref.uid > uid]

    async def fetch(self, refs: list[MessageRef]) -> AsyncGenerator[RawMessage, None]:
        """Stream message bodies in the order of ``refs``.

        UIDs the server no longer has (expunged in between) are skipped.
        """
        account_id = self._account.account_id if self._account else ""
        folder = self._folder or ""

        for start in range(0, len(refs), self._fetch_batch_size):
            uids = [ref.uid for ref in refs[start : start + self._fetch_batch_size]]

            def _fetch(batch: list[int] = uids) -> dict[int, dict[bytes, Any]]:
                self._leave_idle()
                return self._require().fetch(batch, [_FETCH_ITEM])

            response = await self._run(_fetch)
            for uid in uids:
                entry = response.get(uid) or {}
                data = entry.get(_FETCH_KEY)
                if data is None:
                    logger.warning("imap_message_missing", account_id=account_id, uid=uid)
                    continue
                yield RawMessage(account_id=account_id, folder=folder, uid=uid, data=bytes(data))

    async def watch(self, timeout: float) -> bool:
        """Enter IDLE (if needed) and wait up to ``timeout`` seconds for activity.

        On activity the client leaves IDLE so the caller can issue commands.
        """

        def _watch() -> bool:
            imap = self._require()
            if not self._idling:
                imap.idle()
                self._idling = True
            responses = imap.idle_check(timeout=timeout)
            if _has_activity(responses):
                self._leave_idle()
                return True
            return False

        return await self._run(_watch)

    async def renew_watch(self) -> None:
        """Re-issue IDLE before the server's idle timeout expires."""

        def _renew() -> None:
            self._leave_idle()
            self._require().idle()
            self._idling = True

        await self._run(_renew)

    async def close(self) -> None:
        """Log out, or drop the socket if a command is still blocking on it."""
        imap, self._imap = self._imap, None
        if imap is None:
            return

        if self._lock.locked():
            # An abandoned command still owns the connection.
            try:
                await asyncio.to_thread(imap.shutdown)
            except OSError as exc:
                logger.warning("imap_shutdown_failed", error=str(exc))
            return

        def _logout() -> None:
            with self._lock:
                if self._idling:
                    self._idling = False
                    imap.idle_done()
                imap.logout()

        try:
            await asyncio.to_thread(_logout)
        except (IMAPClientError, OSError) as exc:
            logger.warning("imap_logout_failed", error=str(exc))

    async def _search(self, criteria: Any) -> list[MessageRef]:
        def _search() -> list[int]:
            self._leave_idle()
            return self._require().search(criteria)

        uids = await self._run(_search)
        return [MessageRef(uid=int(uid)) for uid in sorted(uids)]

    async def _run(self, func: Callable[[], T]) -> T:
        def _locked() -> T:
            with self._lock:
                return func()

        try:
            return await asyncio.to_thread(_locked)
        except LoginError as exc:
            raise TransportError(f"IMAP login rejected: {exc}") from exc
        except (IMAPClientError, OSError) as exc:
            raise TransportError(f"IMAP command failed: {exc}") from exc

    def _require(self) -> Any:
        if self._imap is None:
            raise TransportError("IMAP connection is not open")
        return self._imap

    def _leave_idle(self) -> None:
        if self._idling:
            self._idling = False
            self._require().idle_done()


def _has_activity(responses: list[tuple[Any, ...]]) -> bool:
    return any(len(item) >= 2 and item[1] in _ACTIVITY_RESPONSES for item in responses)
