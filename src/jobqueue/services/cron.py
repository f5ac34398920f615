"""Last-run bookkeeping for commands enqueued on a schedule."""

from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.models import CronJob
from jobqueue.models.base import utcnow


class CronJobTracker:
    """Remembers when each periodic command was last enqueued."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _get(self, command: str) -> CronJob | None:
        result = await self.session.execute(select(CronJob).where(CronJob.command == command))
        return result.scalar_one_or_none()

    async def get_last_run_at(self, command: str) -> datetime | None:
        cron_job = await self._get(command)
        return cron_job.last_run_at if cron_job else None

    async def record_run(self, command: str, run_at: datetime | None = None) -> CronJob:
        """Store the run time for a command, creating its row on first use."""
        run_at = run_at or utcnow()
        cron_job = await self._get(command)
        if cron_job is None:
            cron_job = CronJob(command=command, last_run_at=run_at)
            self.session.add(cron_job)
        else:
            cron_job.last_run_at = run_at
        await self.session.commit()
        return cron_job

    async def is_due(self, command: str, interval: timedelta) -> bool:
        last_run_at = await self.get_last_run_at(command)
        if last_run_at is None:
            return True
        if last_run_at.tzinfo is None:
            # SQLite hands back naive values
            last_run_at = last_run_at.replace(tzinfo=utcnow().tzinfo)
        return utcnow() - last_run_at >= interval
