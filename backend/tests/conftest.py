"""Shared test configuration and fixtures.

Every test gets a fresh database, by default an in-memory SQLite database
through aiosqlite. Set ``TEST_DATABASE_URL`` to run against PostgreSQL.
Provider gateways are replaced with fakes through
``app.dependency_overrides``; nothing here talks to Stripe or Google Play.
"""

import os
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from app.billing.gateways import get_google_play_gateway, get_stripe_gateway
from app.billing.plans import get_plan_by_provider_plan_id, list_plans, seed_plans
from app.billing.stripe_client import CheckoutSessionResult
from app.config import settings
from app.database import Base, get_db
from app.main import app
from app.models.subscription import SubscriptionPlan, SubscriptionProvider
from app.models.user import User
from factories import FakeGooglePlayGateway, auth_headers_for, create_user

_test_db_url = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite://")


def _make_engine():
    if not _test_db_url.startswith("sqlite"):
        return create_async_engine(_test_db_url, echo=False, pool_pre_ping=True)

    engine = create_async_engine(
        _test_db_url,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


# ---------------------------------------------------------------------------
# Per-test database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    """Create an engine with all tables, dropped again after the test."""
    engine = _make_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Yield the session shared by the test and the app under test."""
    session = AsyncSession(test_engine, expire_on_commit=False)
    try:
        yield session
    finally:
        await session.rollback()
        await session.close()


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def plans(db_session: AsyncSession) -> list[SubscriptionPlan]:
    """Seed the plan catalog."""
    await seed_plans(db_session)
    return await list_plans(db_session)


@pytest_asyncio.fixture
async def gp_monthly(db_session: AsyncSession, plans) -> SubscriptionPlan:
    return await get_plan_by_provider_plan_id(db_session, SubscriptionProvider.GOOGLE_PLAY, "monthly")


@pytest_asyncio.fixture
async def gp_yearly(db_session: AsyncSession, plans) -> SubscriptionPlan:
    return await get_plan_by_provider_plan_id(db_session, SubscriptionProvider.GOOGLE_PLAY, "yearly")


@pytest_asyncio.fixture
async def stripe_monthly(db_session: AsyncSession, plans) -> SubscriptionPlan:
    return await get_plan_by_provider_plan_id(
        db_session, SubscriptionProvider.STRIPE, settings.stripe_price_id_monthly
    )


@pytest_asyncio.fixture
async def stripe_yearly(db_session: AsyncSession, plans) -> SubscriptionPlan:
    return await get_plan_by_provider_plan_id(
        db_session, SubscriptionProvider.STRIPE, settings.stripe_price_id_yearly
    )


@pytest_asyncio.fixture
async def gift_card_plan(db_session: AsyncSession, plans) -> SubscriptionPlan:
    return await get_plan_by_provider_plan_id(db_session, SubscriptionProvider.GIFT_CARD, "gift-card")


# ---------------------------------------------------------------------------
# Convenience fixtures: authenticated user
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create and return an active test user directly in the DB."""
    return await create_user(db_session)


@pytest_asyncio.fixture
async def auth_headers(test_user: User) -> dict[str, str]:
    """Return Authorization headers for the test user."""
    return auth_headers_for(test_user)


# ---------------------------------------------------------------------------
# Provider gateways
# ---------------------------------------------------------------------------


@pytest.fixture
def google_play_gateway() -> FakeGooglePlayGateway:
    return FakeGooglePlayGateway()


@pytest.fixture
def stripe_gateway() -> MagicMock:
    """A StripeGateway stand-in with every network call mocked."""
    gateway = MagicMock()
    gateway.get_subscription = AsyncMock()
    gateway.create_checkout_session = AsyncMock(
        return_value=CheckoutSessionResult(url="https://checkout.stripe.com/c/pay/cs_test_123", subscription_id=None)
    )
    gateway.create_customer_portal_session = AsyncMock(return_value="https://billing.stripe.com/p/session/test_123")
    gateway.refund_subscription = AsyncMock()
    gateway.reset_customer_name_and_email = AsyncMock()
    gateway.cancel = AsyncMock()
    return gateway


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    google_play_gateway: FakeGooglePlayGateway,
    stripe_gateway: MagicMock,
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test DB session and fake gateways."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_google_play_gateway] = lambda: google_play_gateway
    app.dependency_overrides[get_stripe_gateway] = lambda: stripe_gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()
