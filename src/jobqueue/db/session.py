"""Database session management."""

from collections.abc import AsyncGenerator
from functools import lru_cache
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from jobqueue.config import get_settings
from jobqueue.models import Base


@lru_cache
def get_engine() -> AsyncEngine:
    """Get the shared async engine for the configured database."""
    url = get_settings().async_database_url
    options: dict[str, Any] = {"pool_pre_ping": True}  # Check connection health before using
    if not url.startswith("sqlite"):
        options.update(
            pool_size=5,
            max_overflow=10,
            pool_recycle=300,  # Recycle connections after 5 minutes
        )
    return create_async_engine(url, echo=False, **options)


@lru_cache
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """Get the session factory bound to the shared engine."""
    return async_sessionmaker(
        get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that provides a database session."""
    async with get_sessionmaker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables that do not exist yet."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
