"""Per-account synchronization state machine.

An :class:`AccountSession` owns one mailbox connection for its whole life:

    DISCONNECTED -> CONNECTING -> BACKFILLING -> WATCHING <-> REFRESHING
                        ^                           |
                        +------ RECONNECTING <------+   (any TransportError)

Reconnects re-enter ``CONNECTING`` from the session loop rather than by
recursion, and resume from the last known cursor. The 30-day backfill only
runs while no valid cursor exists.

The session is mutated only by the task running :meth:`AccountSession.run`.
Other code interacts with it through :meth:`AccountSession.request_stop`
and the lifecycle signals it puts on the supervisor queue.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, TypeVar

import structlog

from onebox_sync.config import Settings
from onebox_sync.exceptions import InvalidTransitionError, TransportError
from onebox_sync.models import (
    AccountConfig,
    MailboxCursor,
    MailboxStatus,
    MessageRef,
    RawMessage,
    SessionSignal,
    SessionState,
)
from onebox_sync.ports import CursorStore, MailboxClient, MailboxClientFactory
from onebox_sync.sync.backoff import BackoffPolicy
from onebox_sync.sync.keepalive import KeepaliveScheduler
from onebox_sync.sync.pipeline import IngestionPipeline

logger = structlog.get_logger()

T = TypeVar("T")

_CLOSE_TIMEOUT_SECONDS = 5.0

_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.DISCONNECTED: frozenset({SessionState.CONNECTING}),
    SessionState.CONNECTING: frozenset(
        {SessionState.BACKFILLING, SessionState.RECONNECTING, SessionState.DISCONNECTED}
    ),
    SessionState.BACKFILLING: frozenset(
        {SessionState.WATCHING, SessionState.RECONNECTING, SessionState.DISCONNECTED}
    ),
    SessionState.WATCHING: frozenset(
        {SessionState.REFRESHING, SessionState.RECONNECTING, SessionState.DISCONNECTED}
    ),
    SessionState.REFRESHING: frozenset(
        {SessionState.WATCHING, SessionState.RECONNECTING, SessionState.DISCONNECTED}
    ),
    SessionState.RECONNECTING: frozenset({SessionState.CONNECTING, SessionState.DISCONNECTED}),
}


class WatchReason(str, Enum):
    """Why the watch wait returned."""

    ACTIVITY = "activity"
    RENEWAL_DUE = "renewal-due"
    SHUTDOWN = "shutdown"
    IDLE = "idle"


@dataclass(frozen=True)
class SessionEvent:
    """A lifecycle signal sent from a session to its supervisor."""

    account_id: str
    signal: SessionSignal
    error: str | None = None


class _ShutdownRequested(Exception):
    """Unwinds the session loop once a stop has been requested."""


class AccountSession:
    """Connection, backfill and live watch for one account."""

    def __init__(
        self,
        account: AccountConfig,
        client_factory: MailboxClientFactory,
        pipeline: IngestionPipeline,
        *,
        backoff: BackoffPolicy | None = None,
        keepalive_interval: float = 29 * 60,
        server_timeout: float | None = 30 * 60,
        backfill_days: int = 30,
        backfill_concurrency: int = 4,
        watch_poll_seconds: float = 30.0,
        connect_timeout: float = 30.0,
        cursor_store: CursorStore | None = None,
        signals: asyncio.Queue[SessionEvent] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Create a session in the ``DISCONNECTED`` state.

        Args:
            account: Mailbox credentials and location.
            client_factory: Builds a fresh MailboxClient for every connect attempt.
            pipeline: Pipeline applied to every fetched message.
            backoff: Reconnect delay policy.
            keepalive_interval: Seconds between IDLE renewals.
            server_timeout: Remote idle timeout the interval must stay under.
            backfill_days: Size of the historical catch-up window.
            backfill_concurrency: Messages in flight during backfill.
            watch_poll_seconds: Upper bound on one blocking watch call.
            connect_timeout: Bound on connect/open and on a watch renewal.
            cursor_store: Optional persistence for the watch cursor.
            signals: Queue receiving lifecycle signals.
            clock: Source of "now"; defaults to UTC wall clock.

        Raises:
            ValueError: If a renewal could come due only after the server has
                already dropped the watch.
        """
        if server_timeout is not None and keepalive_interval + watch_poll_seconds >= server_timeout:
            raise ValueError("keepalive_interval plus watch_poll_seconds must stay under server_timeout")

        self.account = account
        self._client_factory = client_factory
        self._pipeline = pipeline
        self._backoff = backoff or BackoffPolicy()
        self._backfill_days = backfill_days
        self._backfill_concurrency = max(1, backfill_concurrency)
        self._watch_poll_seconds = watch_poll_seconds
        self._connect_timeout = connect_timeout
        self._cursor_store = cursor_store
        self._signals = signals
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.keepalive = KeepaliveScheduler(
            keepalive_interval,
            server_timeout=server_timeout,
            name=account.account_id,
        )
        self.state = SessionState.DISCONNECTED
        self.state_history: list[SessionState] = [SessionState.DISCONNECTED]
        self.cursor: MailboxCursor | None = None
        self.retry_count = 0
        self.backoff_delays: list[float] = []

        self._client: MailboxClient | None = None
        self._status: MailboxStatus | None = None
        self._watch_task: asyncio.Task[bool] | None = None
        self._stop_event = asyncio.Event()
        self._started_at: datetime | None = None
        self._log = logger.bind(account_id=account.account_id)

    @classmethod
    def from_settings(
        cls,
        account: AccountConfig,
        client_factory: MailboxClientFactory,
        pipeline: IngestionPipeline,
        settings: Settings,
        **kwargs: Any,
    ) -> "AccountSession":
        """Create a session configured from application settings."""
        return cls(
            account,
            client_factory,
            pipeline,
            backoff=BackoffPolicy(
                base=settings.backoff_base_seconds,
                cap=settings.backoff_cap_seconds,
                jitter=settings.backoff_jitter,
            ),
            keepalive_interval=settings.keepalive_interval_seconds,
            server_timeout=settings.server_idle_timeout_seconds,
            backfill_days=settings.backfill_days,
            backfill_concurrency=settings.backfill_concurrency,
            watch_poll_seconds=settings.watch_poll_seconds,
            connect_timeout=settings.connect_timeout_seconds,
            **kwargs,
        )

    @property
    def account_id(self) -> str:
        return self.account.account_id

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self) -> None:
        """Ask the session to close; every suspension point observes this at once."""
        if not self._stop_event.is_set():
            self._log.info("session_stop_requested", state=self.state.value)
        self._stop_event.set()

    async def run(self) -> None:
        """Drive the state machine until shutdown.

        Transport failures never escape: they lead to ``RECONNECTING``. Any
        other exception is reported as a ``FATAL`` signal and re-raised.
        The session always ends in ``DISCONNECTED``.
        """
        self._started_at = self._clock()
        self._signal(SessionSignal.STARTED)
        await self._load_cursor()

        try:
            if not self.stopping:
                self._transition(SessionState.CONNECTING)
            while not self.stopping:
                try:
                    await self._connect()
                    await self._catch_up()
                    await self._watch_loop()
                except TransportError as exc:
                    if self.stopping:
                        break
                    await self._reconnect(exc)
        except _ShutdownRequested:
            pass
        except Exception as exc:
            self._log.exception("session_fatal", state=self.state.value)
            self._signal(SessionSignal.FATAL, error=str(exc))
            raise
        finally:
            self.keepalive.stop()
            try:
                await self._close_client()
            finally:
                if self.state is not SessionState.DISCONNECTED:
                    self._transition(SessionState.DISCONNECTED)
                self._signal(SessionSignal.CLOSED)
                self._log.info("session_closed", retry_count=self.retry_count)

    # -- state machine -------------------------------------------------------

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"{self.account_id}: illegal transition {self.state.value} -> {new_state.value}"
            )
        old_state = self.state
        self.state = new_state
        self.state_history.append(new_state)
        if new_state not in (SessionState.WATCHING, SessionState.REFRESHING):
            self.keepalive.stop()
        self._log.info(
            "session_state_changed",
            from_state=old_state.value,
            to_state=new_state.value,
        )

    async def _connect(self) -> None:
        client = self._client_factory()
        self._client = client

        async def _open() -> MailboxStatus:
            await client.connect(self.account)
            return await client.open_mailbox(self.account.mailbox)

        try:
            self._status = await self._interruptible(
                asyncio.wait_for(_open(), timeout=self._connect_timeout)
            )
        except asyncio.TimeoutError as exc:
            raise TransportError(
                f"timed out after {self._connect_timeout}s connecting to {self.account.host}"
            ) from exc

        self._log.info(
            "session_connected",
            host=self.account.host,
            mailbox=self.account.mailbox,
            uidvalidity=self._status.uidvalidity,
            exists=self._status.exists,
            previous_attempts=self.retry_count,
        )
        self.retry_count = 0
        self._transition(SessionState.BACKFILLING)

    async def _catch_up(self) -> None:
        if self._status is None:
            raise TransportError("mailbox is not open")
        if self.cursor is not None and not self.cursor.matches(self.account.mailbox, self._status):
            self._log.warning(
                "cursor_invalidated",
                folder=self.cursor.folder,
                stored_uidvalidity=self.cursor.uidvalidity,
                server_uidvalidity=self._status.uidvalidity,
            )
            self.cursor = None

        if self.cursor is None:
            await self._backfill(self._status)
        else:
            self._log.info("session_resuming", last_uid=self.cursor.last_uid)
            await self._fetch_new()

        self._transition(SessionState.WATCHING)
        self._signal(SessionSignal.WATCHING)

    async def _reconnect(self, exc: TransportError) -> None:
        self.keepalive.stop()
        await self._close_client()
        self._transition(SessionState.RECONNECTING)

        self.retry_count += 1
        delay = self._backoff.delay(self.retry_count)
        self.backoff_delays.append(delay)
        self._log.warning(
            "session_reconnecting",
            attempt=self.retry_count,
            delay=round(delay, 3),
            error=str(exc),
            has_cursor=self.cursor is not None,
        )

        await self._interruptible(asyncio.sleep(delay))
        self._transition(SessionState.CONNECTING)

    # -- backfill ------------------------------------------------------------

    async def _backfill(self, status: MailboxStatus) -> None:
        client = self._require_client()
        started_at = self._started_at or self._clock()
        since = (started_at - timedelta(days=self._backfill_days)).date()

        # Highest UID first: anything arriving after this point is picked up by the watch.
        all_refs = await self._interruptible(client.search_all())
        refs = await self._interruptible(client.search_since(since))
        highest = max((ref.uid for ref in (*all_refs, *refs)), default=0)

        self._log.info(
            "backfill_started",
            since=since.isoformat(),
            messages=len(refs),
            highest_uid=highest,
        )
        if refs:
            await self._drain_concurrently(client, refs)

        await self._set_cursor(
            MailboxCursor(
                folder=self.account.mailbox,
                uidvalidity=status.uidvalidity,
                last_uid=highest,
            )
        )
        self._log.info("backfill_completed", messages=len(refs), last_uid=highest)

    async def _drain_concurrently(self, client: MailboxClient, refs: list[MessageRef]) -> None:
        try:
            await self._interruptible(self._drain(client, refs))
        except _ShutdownRequested:
            self._log.info("backfill_abandoned", reason="shutdown")
            raise

    async def _drain(self, client: MailboxClient, refs: list[MessageRef]) -> None:
        semaphore = asyncio.Semaphore(self._backfill_concurrency)
        in_flight: set[asyncio.Task[None]] = set()

        try:
            async with aclosing(client.fetch(refs)) as stream:
                async for raw in stream:
                    await semaphore.acquire()
                    task = asyncio.create_task(self._process_backfill_message(raw, semaphore))
                    in_flight.add(task)
                    task.add_done_callback(in_flight.discard)
        except asyncio.CancelledError:
            for task in in_flight:
                task.cancel()
            raise
        finally:
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

    async def _process_backfill_message(self, raw: RawMessage, semaphore: asyncio.Semaphore) -> None:
        try:
            await self._pipeline.process(raw, self._stop_event)
        except asyncio.CancelledError:
            self._log.info("backfill_message_dropped", uid=raw.uid, reason="shutdown")
            raise
        except Exception as exc:  # noqa: BLE001
            self._log.error("backfill_message_failed", uid=raw.uid, error=str(exc))
        finally:
            semaphore.release()

    # -- live watch ----------------------------------------------------------

    async def _watch_loop(self) -> None:
        self.keepalive.start()
        try:
            while True:
                reason = await self._wait_for_signal()
                if reason is WatchReason.SHUTDOWN:
                    return
                if reason is WatchReason.ACTIVITY:
                    self._log.info("new_mail_detected")
                    await self._fetch_new()
                elif reason is WatchReason.RENEWAL_DUE:
                    await self._refresh()
        finally:
            self.keepalive.stop()
            await self._cancel_watch()

    async def _wait_for_signal(self) -> WatchReason:
        """Wait for activity, a due renewal or shutdown, whichever comes first."""
        client = self._require_client()
        if self.stopping:
            return WatchReason.SHUTDOWN
        if self._watch_task is None:
            if self.keepalive.is_due:
                return WatchReason.RENEWAL_DUE
            self._watch_task = asyncio.create_task(client.watch(self._watch_timeout()))

        watch_task = self._watch_task
        stop_task = asyncio.create_task(self._stop_event.wait())
        due_task = asyncio.create_task(self.keepalive.wait_due())
        try:
            done, _ = await asyncio.wait(
                {watch_task, stop_task, due_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_task.cancel()
            due_task.cancel()

        if stop_task in done or self.stopping:
            return WatchReason.SHUTDOWN

        if watch_task in done:
            self._watch_task = None
            if watch_task.result():
                return WatchReason.ACTIVITY

        if due_task in done or self.keepalive.is_due:
            return WatchReason.RENEWAL_DUE
        return WatchReason.IDLE

    async def _refresh(self) -> None:
        self._transition(SessionState.REFRESHING)
        client = self._require_client()

        pending_activity = False
        if self._watch_task is not None:
            # The in-flight watch call ends by the renewal deadline.
            watch_task, self._watch_task = self._watch_task, None
            pending_activity = await self._interruptible(watch_task)

        async def _renew() -> None:
            try:
                await asyncio.wait_for(client.renew_watch(), timeout=self._connect_timeout)
            except asyncio.TimeoutError as exc:
                raise TransportError("watch renewal timed out") from exc

        await self._interruptible(self.keepalive.renew(_renew))
        self._log.info("watch_renewed", renewals=self.keepalive.fired)
        self._transition(SessionState.WATCHING)

        if pending_activity:
            await self._fetch_new()

    async def _fetch_new(self) -> None:
        """Process messages above the cursor, one at a time in UID order."""
        client = self._require_client()
        last_uid = self._require_cursor().last_uid

        refs = await self._interruptible(client.search_after(last_uid))
        new_refs = sorted((ref for ref in refs if ref.uid > last_uid), key=lambda ref: ref.uid)
        if not new_refs:
            return

        self._log.info("incremental_fetch_started", messages=len(new_refs), after_uid=last_uid)
        await self._interruptible(self._drain_in_order(client, new_refs))

    async def _drain_in_order(self, client: MailboxClient, refs: list[MessageRef]) -> None:
        async with aclosing(client.fetch(refs)) as stream:
            async for raw in stream:
                try:
                    await self._pipeline.process(raw, self._stop_event)
                except Exception as exc:  # noqa: BLE001
                    self._log.error("live_message_failed", uid=raw.uid, error=str(exc))
                if self.stopping:
                    return
                await self._set_cursor(self._require_cursor().advance(raw.uid))

    # -- helpers -------------------------------------------------------------

    async def _interruptible(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless shutdown is requested first."""
        task = asyncio.ensure_future(awaitable)
        if self.stopping:
            await _discard(task)
            raise _ShutdownRequested()

        stop_task = asyncio.create_task(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait({task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await _discard(task)
            raise
        finally:
            stop_task.cancel()

        if task in done:
            return task.result()
        await _discard(task)
        raise _ShutdownRequested()

    async def _cancel_watch(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task is not None:
            await _discard(task)

    async def _close_client(self) -> None:
        await self._cancel_watch()
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await asyncio.wait_for(client.close(), timeout=_CLOSE_TIMEOUT_SECONDS)
        except Exception as exc:  # noqa: BLE001
            self._log.warning("session_close_failed", error=str(exc))

    async def _load_cursor(self) -> None:
        if self._cursor_store is None:
            return
        try:
            self.cursor = await asyncio.to_thread(
                self._cursor_store.load, self.account_id, self.account.mailbox
            )
        except Exception as exc:  # noqa: BLE001
            self._log.warning("cursor_load_failed", error=str(exc))
            return
        if self.cursor is not None:
            self._log.info("cursor_loaded", last_uid=self.cursor.last_uid)

    async def _set_cursor(self, cursor: MailboxCursor) -> None:
        self.cursor = cursor
        if self._cursor_store is None:
            return
        try:
            await asyncio.to_thread(self._cursor_store.save, self.account_id, cursor)
        except Exception as exc:  # noqa: BLE001
            self._log.warning("cursor_save_failed", last_uid=cursor.last_uid, error=str(exc))

    def _require_client(self) -> MailboxClient:
        if self._client is None:
            raise TransportError("session has no open connection")
        return self._client

    def _require_cursor(self) -> MailboxCursor:
        if self.cursor is None:
            raise InvalidTransitionError(f"{self.account_id}: no cursor outside backfill")
        return self.cursor

    def _watch_timeout(self) -> float:
        remaining = self.keepalive.remaining
        if remaining is None:
            return self._watch_poll_seconds
        return min(self._watch_poll_seconds, remaining)

    def _signal(self, signal: SessionSignal, error: str | None = None) -> None:
        if self._signals is not None:
            self._signals.put_nowait(SessionEvent(self.account_id, signal, error))


async def _discard(task: asyncio.Future[Any]) -> None:
    """Cancel ``task`` and consume its outcome."""
    if not task.done():
        task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        # Propagate only if the current task itself is being cancelled.
        current = asyncio.current_task()
        if current is not None and current.cancelling():
            raise
    except Exception as exc:  # noqa: BLE001
        logger.debug("abandoned_call_failed", error=str(exc), error_type=type(exc).__name__)
