"""API dependency injection."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.config import get_settings
from jobqueue.db.session import get_db
from jobqueue.services import ExponentialRetryScheduler, JobManager

# Type alias for database session dependency
DbSession = Annotated[AsyncSession, Depends(get_db)]


def get_job_manager(db: DbSession) -> JobManager:
    """Job manager bound to the request's session."""
    settings = get_settings()
    return JobManager(
        db,
        retry_scheduler=ExponentialRetryScheduler(
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
        ),
    )


JobManagerDep = Annotated[JobManager, Depends(get_job_manager)]
