"""Lifecycle management for all account sessions.

The supervisor starts one :class:`AccountSession` task per account, keeps
an explicit ``account_id -> SessionHandle`` mapping, and owns the shutdown
contract. It never touches messages itself.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

import structlog

from onebox_sync.config import Settings, get_settings
from onebox_sync.models import AccountConfig, SessionSignal, SessionState
from onebox_sync.ports import CursorStore, MailboxClient
from onebox_sync.sync.pipeline import IngestionPipeline
from onebox_sync.sync.session import AccountSession, SessionEvent

logger = structlog.get_logger()

Cleanup = Callable[[], Awaitable[None]]


@dataclass
class SessionHandle:
    """A running session and the task executing it."""

    session: AccountSession
    task: asyncio.Task[None]

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def done(self) -> bool:
        return self.task.done()


class SyncSupervisor:
    """Starts, tracks and stops one session per configured account."""

    def __init__(
        self,
        accounts: Iterable[AccountConfig],
        client_factory: Callable[[AccountConfig], MailboxClient],
        pipeline: IngestionPipeline,
        settings: Settings | None = None,
        cursor_store: CursorStore | None = None,
    ) -> None:
        """Create a supervisor.

        Args:
            accounts: Accounts to synchronize, read once at startup.
            client_factory: Builds a new MailboxClient for an account.
            pipeline: Ingestion pipeline shared by every session.
            settings: Application settings. If None, uses default settings.
            cursor_store: Optional persistence for watch cursors.
        """
        self.settings = settings or get_settings()
        self.accounts = list(accounts)
        self.sessions: dict[str, SessionHandle] = {}
        self.events: list[SessionEvent] = []
        self._client_factory = client_factory
        self._pipeline = pipeline
        self._cursor_store = cursor_store
        self._signals: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._monitor_task: asyncio.Task[None] | None = None
        self._cleanups: list[Cleanup] = []
        self._started = False
        self._shut_down = False

    def add_cleanup(self, cleanup: Cleanup) -> None:
        """Register a coroutine function releasing a global resource at shutdown."""
        self._cleanups.append(cleanup)

    async def start(self) -> None:
        """Start one session task per account."""
        if self._started:
            raise RuntimeError("supervisor already started")
        self._started = True

        self._monitor_task = asyncio.create_task(self._monitor_signals(), name="supervisor:signals")

        for account in self.accounts:
            if account.account_id in self.sessions:
                logger.warning("duplicate_account_skipped", account_id=account.account_id)
                continue

            session = AccountSession.from_settings(
                account,
                functools.partial(self._client_factory, account),
                self._pipeline,
                self.settings,
                cursor_store=self._cursor_store,
                signals=self._signals,
            )
            task = asyncio.create_task(session.run(), name=f"session:{account.account_id}")
            task.add_done_callback(self._on_session_done)
            self.sessions[account.account_id] = SessionHandle(session=session, task=task)

        logger.info("supervisor_started", sessions=len(self.sessions))

    async def wait(self) -> None:
        """Block until every session task has finished."""
        tasks = [handle.task for handle in self.sessions.values()]
        if tasks:
            await asyncio.wait(tasks)

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop every session and release global resources.

        Sessions are asked to close and given ``timeout`` seconds (default
        ``shutdown_timeout_seconds``) to reach ``DISCONNECTED``; the rest are
        cancelled. Calling this twice is a no-op.
        """
        if self._shut_down:
            return
        self._shut_down = True
        timeout = self.settings.shutdown_timeout_seconds if timeout is None else timeout

        logger.info("supervisor_shutdown_started", sessions=len(self.sessions), timeout=timeout)
        for handle in self.sessions.values():
            handle.session.request_stop()

        tasks = [handle.task for handle in self.sessions.values()]
        pending: set[asyncio.Task[None]] = set()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)

        if pending:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "sessions_force_terminated",
                account_ids=[
                    account_id
                    for account_id, handle in self.sessions.items()
                    if handle.task in pending
                ],
            )

        if self._monitor_task is not None:
            self._drain_signals()
            self._monitor_task.cancel()
            await asyncio.gather(self._monitor_task, return_exceptions=True)

        for cleanup in self._cleanups:
            try:
                await cleanup()
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "cleanup_failed",
                    cleanup=getattr(cleanup, "__qualname__", repr(cleanup)),
                    error=str(exc),
                )

        logger.info(
            "supervisor_shutdown_completed",
            states={account_id: handle.state.value for account_id, handle in self.sessions.items()},
        )

    def states(self) -> dict[str, SessionState]:
        return {account_id: handle.state for account_id, handle in self.sessions.items()}

    async def _monitor_signals(self) -> None:
        while True:
            event = await self._signals.get()
            self._record(event)

    def _drain_signals(self) -> None:
        while not self._signals.empty():
            self._record(self._signals.get_nowait())

    def _record(self, event: SessionEvent) -> None:
        self.events.append(event)
        if event.signal is SessionSignal.FATAL:
            logger.error(
                "session_signal",
                account_id=event.account_id,
                signal=event.signal.value,
                error=event.error,
            )
        else:
            logger.info("session_signal", account_id=event.account_id, signal=event.signal.value)

    def _on_session_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "session_task_failed",
                task=task.get_name(),
                error=str(exc),
                exc_info=exc,
            )
