from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from libs.common.config import Settings, get_settings
from libs.db.base import Base
from services.payments_service import models as _payment_models  # noqa: F401
from services.payments_service.app.main import app
from services.payments_service.services.notifications import NotificationClient
from services.payments_service.services.reconciler import PaymentEventReconciler
from services.payments_service.stripe_client import StripeClient

TEST_WEBHOOK_SECRET = "whsec_test_secret"
PRODUCTION_WEBHOOK_SECRET = "whsec_production_secret"

# Tests never read a developer's .env
get_settings.cache_clear()


@pytest_asyncio.fixture
async def test_engine():
    """
    Fresh in-memory SQLite database per test.

    StaticPool keeps the single connection alive so every session sees the
    same database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a database session. Code under test commits and rolls back freely;
    the database is thrown away with the engine.
    """
    session_factory = async_sessionmaker(
        bind=test_engine, class_=AsyncSession, expire_on_commit=False
    )
    async with session_factory() as session:
        yield session


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        bind=test_engine, class_=AsyncSession, expire_on_commit=False
    )


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    """
    File-backed SQLite database where every session gets its own connection,
    for tests that run transactions concurrently.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def file_session_factory(file_engine):
    return async_sessionmaker(
        bind=file_engine, class_=AsyncSession, expire_on_commit=False
    )


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        ENVIRONMENT="local",
        STRIPE_SECRET_KEY_PRODUCTION="sk_live_dummy",
        STRIPE_WEBHOOK_SECRET_PRODUCTION=PRODUCTION_WEBHOOK_SECRET,
        STRIPE_SECRET_KEY_TEST="sk_test_dummy",
        STRIPE_WEBHOOK_SECRET_TEST=TEST_WEBHOOK_SECRET,
        NOTIFICATION_WEBHOOK_URL="http://notifications.test/hook",
        ADMIN_NOTIFICATION_EMAIL="admin@test.com",
    )


def _mock_stripe_client(name: str) -> AsyncMock:
    client = AsyncMock(spec=StripeClient)
    client.environment_name = name
    client.retrieve_balance.return_value = {"usd": 1_000_000}
    client.retrieve_account.return_value = {
        "id": "acct_test_university",
        "charges_enabled": True,
        "payouts_enabled": True,
    }
    client.find_session_for_payment_intent.return_value = None
    return client


@pytest.fixture
def stripe_client() -> AsyncMock:
    """Stripe client double for the ``test`` environment."""
    return _mock_stripe_client("test")


@pytest.fixture
def production_stripe_client() -> AsyncMock:
    return _mock_stripe_client("production")


@pytest.fixture
def notifier() -> AsyncMock:
    client = AsyncMock(spec=NotificationClient)
    client.send.return_value = True
    return client


@pytest.fixture
def reconciler(
    test_settings, stripe_client, production_stripe_client, notifier
) -> PaymentEventReconciler:
    return PaymentEventReconciler(
        settings=test_settings,
        stripe_clients={
            "production": production_stripe_client,
            "test": stripe_client,
        },
        notifier=notifier,
    )


@pytest_asyncio.fixture
async def payments_client(db_session, reconciler) -> AsyncGenerator[AsyncClient, None]:
    """
    Yield an AsyncClient against the payments app with the test database
    and the mocked reconciler collaborators.
    """
    from libs.db.session import get_async_db

    app.dependency_overrides[get_async_db] = lambda: db_session
    app.state.reconciler = reconciler

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
    del app.state.reconciler
