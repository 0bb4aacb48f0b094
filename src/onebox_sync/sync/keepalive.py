"""Periodic renewal of a long-lived IDLE watch.

Servers drop an IDLE command that stays open past their idle timeout
(RFC 2177 recommends re-issuing it at least every 29 minutes). The
scheduler only signals that a renewal is due; the owning session performs
the renewal through :meth:`KeepaliveScheduler.renew`, which guarantees a
single renewal in flight at a time.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger()


class RenewalInFlightError(RuntimeError):
    """Raised when a renewal is requested while another is still running."""


class KeepaliveScheduler:
    """Fires a renewal signal every ``interval`` seconds while armed."""

    def __init__(
        self,
        interval: float,
        *,
        server_timeout: float | None = None,
        name: str = "",
    ) -> None:
        """Create a scheduler.

        Args:
            interval: Seconds between renewals.
            server_timeout: Remote idle timeout; ``interval`` must be shorter.
            name: Label used in log events (usually the account id).

        Raises:
            ValueError: If the interval is not positive or not shorter than
                the server timeout.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        if server_timeout is not None and interval >= server_timeout:
            raise ValueError("interval must be shorter than the server idle timeout")

        self.interval = interval
        self.server_timeout = server_timeout
        self.name = name
        self.fired = 0
        self._due = asyncio.Event()
        self._timer: asyncio.Task[None] | None = None
        self._deadline: float | None = None
        self._in_flight = False

    @property
    def armed(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def is_due(self) -> bool:
        return self._due.is_set()

    @property
    def renewing(self) -> bool:
        return self._in_flight

    @property
    def remaining(self) -> float | None:
        """Seconds until the next renewal is due, or None while disarmed."""
        if self._due.is_set():
            return 0.0
        if self._deadline is None or not self.armed:
            return None
        return max(0.0, self._deadline - asyncio.get_running_loop().time())

    def start(self) -> None:
        """Arm (or re-arm) the timer from now."""
        self._cancel_timer()
        self._due.clear()
        loop = asyncio.get_running_loop()
        self._deadline = loop.time() + self.interval
        self._timer = loop.create_task(
            self._countdown(), name=f"keepalive:{self.name}"
        )

    def stop(self) -> None:
        """Disarm the timer and forget any pending renewal signal."""
        self._cancel_timer()
        self._due.clear()

    async def wait_due(self) -> None:
        """Block until a renewal is due."""
        await self._due.wait()

    async def renew(self, renewal: Callable[[], Awaitable[None]]) -> None:
        """Run ``renewal`` and re-arm the timer once it succeeds.

        The timer stays disarmed while the renewal runs, so it can never fire
        on top of it. On failure the scheduler is left stopped and the
        exception propagates to the caller.

        Raises:
            RenewalInFlightError: If another renewal has not finished yet.
        """
        if self._in_flight:
            raise RenewalInFlightError(f"renewal already running for {self.name}")

        self._in_flight = True
        self.stop()
        try:
            await renewal()
        finally:
            self._in_flight = False
        self.start()
        logger.debug("keepalive_renewed", account_id=self.name, interval=self.interval)

    async def _countdown(self) -> None:
        await asyncio.sleep(self.interval)
        self.fired += 1
        self._due.set()
        logger.debug("keepalive_due", account_id=self.name, fired=self.fired)

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        self._deadline = None
