from collections.abc import AsyncIterator
from datetime import datetime, timezone

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from leaseledger.core.config import settings

engine = create_async_engine(settings.database_url, pool_pre_ping=True)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncIterator[AsyncSession]:
    """Request-scoped session. Routers commit through the unit of work; anything
    left uncommitted when the request ends is rolled back."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            if session.in_transaction():
                await session.rollback()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Factory for operations that commit per item (the rent generator)."""
    return AsyncSessionLocal


def create_job_session_factory() -> tuple:
    """Fresh engine + factory for a Celery job running under ``asyncio.run``.

    Pooled connections cannot cross event loops, so each job run gets its own
    engine and disposes it afterwards.
    """
    job_engine = create_async_engine(settings.database_url, poolclass=NullPool)
    return job_engine, async_sessionmaker(job_engine, expire_on_commit=False)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
