"""Tests for the cron last-run tracker."""

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.models.base import utcnow
from jobqueue.services import CronJobTracker


class TestCronJobTracker:
    """Tests for periodic command bookkeeping."""

    @pytest.mark.asyncio
    async def test_unknown_command_never_ran(self, session: AsyncSession) -> None:
        """Test commands without a row have no last run and are due."""
        tracker = CronJobTracker(session)

        assert await tracker.get_last_run_at("cleanup") is None
        assert await tracker.is_due("cleanup", timedelta(hours=1))

    @pytest.mark.asyncio
    async def test_record_run_upserts(self, session: AsyncSession) -> None:
        """Test recording twice updates the same row."""
        tracker = CronJobTracker(session)
        earlier = utcnow() - timedelta(hours=2)

        first = await tracker.record_run("cleanup", earlier)
        second = await tracker.record_run("cleanup")

        assert second is first
        assert second.last_run_at > earlier
        assert await tracker.get_last_run_at("cleanup") == second.last_run_at

    @pytest.mark.asyncio
    async def test_is_due_after_interval(self, session: AsyncSession) -> None:
        """Test a command is due once its interval has passed."""
        tracker = CronJobTracker(session)
        await tracker.record_run("cleanup", utcnow() - timedelta(minutes=30))

        assert await tracker.is_due("cleanup", timedelta(minutes=10))
        assert not await tracker.is_due("cleanup", timedelta(hours=1))
