"""
Database session management.

WHY: Request handlers get a session through the `get_db` dependency.
Background jobs and the CLI have no request, so they open one through
`session_scope`, which applies the same commit/rollback rules.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from billing_sync.core.config import settings


# pool_pre_ping recycles connections dropped while the 6-hour sync job sleeps
engine = create_async_engine(
    settings.async_database_url,
    echo=settings.DEBUG,
    pool_pre_ping=True,
    pool_size=5,
    max_overflow=10,
)

# expire_on_commit=False: sync results hold ORM rows after the commit
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency to get database session.

    Commits when the handler returns normally and rolls back if it raises.

    Yields:
        AsyncSession: Database session for the request
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """
    Session for code running outside a request (scheduler jobs, CLI).

    Example:
        async with session_scope() as db:
            await SubscriptionReconciler(db).reconcile()
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
