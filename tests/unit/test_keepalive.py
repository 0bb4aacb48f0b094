"""Unit tests for the keepalive scheduler."""

import asyncio

import pytest

from onebox_sync.sync import KeepaliveScheduler, RenewalInFlightError


class TestKeepaliveScheduler:
    """Test suite for KeepaliveScheduler."""

    @pytest.mark.parametrize(
        ("interval", "server_timeout"),
        [(0, None), (-1, None), (30, 30), (31, 30)],
    )
    def test_invalid_interval_rejected(self, interval: float, server_timeout) -> None:
        """Test that the interval must be positive and shorter than the server timeout."""
        with pytest.raises(ValueError):
            KeepaliveScheduler(interval, server_timeout=server_timeout)

    def test_default_interval_accepted(self) -> None:
        """Test that 29 minutes against a 30 minute timeout is valid."""
        scheduler = KeepaliveScheduler(29 * 60, server_timeout=30 * 60)

        assert scheduler.interval < scheduler.server_timeout

    @pytest.mark.asyncio
    async def test_fires_after_interval(self) -> None:
        """Test that the scheduler signals due after the interval."""
        scheduler = KeepaliveScheduler(0.02, server_timeout=1.0)
        scheduler.start()

        await asyncio.wait_for(scheduler.wait_due(), 1.0)

        assert scheduler.fired == 1
        assert scheduler.is_due
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_remaining_counts_down_to_due(self) -> None:
        """Test that remaining reports the time left until the next renewal."""
        scheduler = KeepaliveScheduler(0.05, server_timeout=1.0)
        assert scheduler.remaining is None

        scheduler.start()
        assert 0 < scheduler.remaining <= 0.05

        await asyncio.wait_for(scheduler.wait_due(), 1.0)
        assert scheduler.remaining == 0.0

        scheduler.stop()
        assert scheduler.remaining is None

    @pytest.mark.asyncio
    async def test_stop_prevents_firing(self) -> None:
        """Test that a stopped scheduler never fires."""
        scheduler = KeepaliveScheduler(0.02, server_timeout=1.0)
        scheduler.start()
        scheduler.stop()

        await asyncio.sleep(0.06)

        assert scheduler.fired == 0
        assert not scheduler.armed

    @pytest.mark.asyncio
    async def test_renew_rearms_after_success(self) -> None:
        """Test that the timer is disarmed during renewal and re-armed after it."""
        scheduler = KeepaliveScheduler(0.02, server_timeout=1.0)
        scheduler.start()
        await scheduler.wait_due()
        armed_during: list[bool] = []

        async def renewal() -> None:
            armed_during.append(scheduler.armed)
            await asyncio.sleep(0.05)

        await scheduler.renew(renewal)

        assert armed_during == [False]
        assert scheduler.armed
        assert not scheduler.is_due
        assert scheduler.fired == 1
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_renew_is_single_flight(self) -> None:
        """Test that a second renewal is rejected while one is running."""
        scheduler = KeepaliveScheduler(10, server_timeout=20)
        release = asyncio.Event()

        async def renewal() -> None:
            await release.wait()

        first = asyncio.create_task(scheduler.renew(renewal))
        await asyncio.sleep(0)

        with pytest.raises(RenewalInFlightError):
            await scheduler.renew(renewal)

        release.set()
        await first
        assert not scheduler.renewing
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_failed_renewal_leaves_scheduler_stopped(self) -> None:
        """Test that a failing renewal propagates and does not re-arm."""
        scheduler = KeepaliveScheduler(10, server_timeout=20)
        scheduler.start()

        async def renewal() -> None:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await scheduler.renew(renewal)

        assert not scheduler.armed
        assert not scheduler.renewing
