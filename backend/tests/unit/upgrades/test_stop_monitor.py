"""
Tests for StopMonitor.
"""

import pytest

from portainer.errors import NetworkUnreachableError, NotFoundError
from upgrades.stop_monitor import StopMonitor


@pytest.mark.unit
class TestStopMonitor:

    @pytest.mark.asyncio
    async def test_removed_externally_counts_as_stopped(self, settings, fake_clock, mock_session):
        """
        Scenario: container deleted by someone else while we wait for it to stop

        Expected: first poll gets 404, returns True without sleeping
        """
        mock_session.inspect.side_effect = NotFoundError("No such container")
        monitor = StopMonitor(settings, clock=fake_clock, sleep=fake_clock.sleep)

        assert await monitor.wait_until_stopped(mock_session, "a" * 64) is True
        assert mock_session.inspect.await_count == 1
        assert fake_clock.sleeps == []

    @pytest.mark.asyncio
    async def test_waits_until_exited(self, settings, fake_clock, mock_session, make_snapshot):
        mock_session.inspect.side_effect = [
            make_snapshot("web"),
            make_snapshot("web"),
            make_snapshot("web", status="exited"),
        ]
        monitor = StopMonitor(settings, clock=fake_clock, sleep=fake_clock.sleep)

        assert await monitor.wait_until_stopped(mock_session, "a" * 64) is True
        assert fake_clock.sleeps == [settings.stop_interval, settings.stop_interval]

    @pytest.mark.asyncio
    async def test_timeout_returns_false(self, settings, fake_clock, mock_session, make_snapshot, caplog):
        mock_session.inspect.return_value = make_snapshot("web")
        monitor = StopMonitor(settings, clock=fake_clock, sleep=fake_clock.sleep)

        assert await monitor.wait_until_stopped(mock_session, "a" * 64) is False
        assert sum(fake_clock.sleeps) == pytest.approx(settings.stop_max_wait)
        assert "proceeding anyway" in caplog.text

    @pytest.mark.asyncio
    async def test_transient_errors_keep_polling(self, settings, fake_clock, mock_session, make_snapshot):
        mock_session.inspect.side_effect = [
            NetworkUnreachableError("reset by peer"),
            make_snapshot("web", status="exited"),
        ]
        monitor = StopMonitor(settings, clock=fake_clock, sleep=fake_clock.sleep)

        assert await monitor.wait_until_stopped(mock_session, "a" * 64) is True
        assert mock_session.inspect.await_count == 2
