"""
Pytest configuration and fixtures.

WHY: Fixtures provide reusable test setup/teardown logic, reducing
duplication and ensuring consistent test environments.
"""

from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from billing_sync.core.config import settings
from billing_sync.core.deps import get_paypal_factory, get_stripe
from billing_sync.db.session import get_db
from billing_sync.main import app
from billing_sync.models import Base
from billing_sync.services.paypal_client import PayPalClient
from billing_sync.services.stripe_client import StripeClient


# WHY: SQLite in memory keeps tests free of a PostgreSQL dependency.
TEST_ASYNC_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ADMIN_KEY = "test-admin-key"
CRON_SECRET = "test-cron-secret"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """
    Create a test database engine.

    WHY: Function scope gives each test a fresh database. StaticPool keeps
    the single in-memory connection alive across sessions.
    """
    engine = create_async_engine(
        TEST_ASYNC_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    # pysqlite's implicit transactions break SAVEPOINT; let SQLAlchemy
    # emit BEGIN itself so begin_nested() works like on PostgreSQL.
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a test database session.

    Yields:
        AsyncSession: Database session for the test
    """
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


# ============================================================================
# Provider fakes
# ============================================================================


@pytest.fixture
def stripe_client() -> MagicMock:
    """
    Stripe client double.

    Async methods are AsyncMocks returning None ("not found") until a test
    sets return_value. list_active_subscriptions is a plain iterator.
    """
    client = MagicMock(spec=StripeClient)
    client.get_subscription = AsyncMock(return_value=None)
    client.retrieve_price = AsyncMock(return_value=None)
    client.list_active_subscriptions = MagicMock(return_value=iter([]))
    return client


@pytest.fixture
def paypal_client() -> MagicMock:
    """PayPal client double shared by both accounts."""
    client = MagicMock(spec=PayPalClient)
    client.get_subscription = AsyncMock(return_value=None)
    client.list_subscription_transactions = AsyncMock(return_value=[])
    client.list_plans = AsyncMock(return_value=[])
    client.get_plan = AsyncMock(return_value=None)
    client.verify_webhook_signature = AsyncMock(return_value=True)
    return client


@pytest.fixture
def paypal_factory(paypal_client):
    return lambda provider: paypal_client


# ============================================================================
# HTTP client
# ============================================================================


@pytest.fixture
def auth_settings(monkeypatch):
    """Configure the admin key and cron secret for the request."""
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    monkeypatch.setattr(settings, "CRON_SECRET", CRON_SECRET)


@pytest.fixture
def admin_headers() -> dict:
    return {"Authorization": f"Bearer {ADMIN_KEY}"}


@pytest.fixture
def cron_headers() -> dict:
    return {"Authorization": f"Bearer {CRON_SECRET}"}


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    stripe_client,
    paypal_factory,
    auth_settings,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Create a test HTTP client.

    WHY: AsyncClient with ASGITransport exercises the app without a real
    server. The database and both provider clients are overridden.

    Yields:
        AsyncClient: HTTP client for making test requests
    """

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe] = lambda: stripe_client
    app.dependency_overrides[get_paypal_factory] = lambda: paypal_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
