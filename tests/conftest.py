"""Shared fixtures: a throwaway SQLite database per test."""

from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from jobqueue.db.session import init_db
from jobqueue.models import Job, JobState
from jobqueue.services import ExponentialRetryScheduler, JobManager


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def events() -> list[tuple[Job, JobState]]:
    """State changes reported by the manager, in order."""
    return []


@pytest.fixture
def manager(session: AsyncSession, events: list[tuple[Job, JobState]]) -> JobManager:
    async def record(job: Job, state: JobState) -> None:
        events.append((job, state))

    return JobManager(
        session,
        on_state_change=record,
        retry_scheduler=ExponentialRetryScheduler(base_delay_seconds=5),
    )


async def reload_job(factory: async_sessionmaker[AsyncSession], job_id: int) -> Job:
    """Fetch a job through a fresh session, bypassing any cached copy."""
    async with factory() as session:
        job = await session.get(Job, job_id)
        assert job is not None
        return job
