"""
Pytest configuration and fixtures.

Every test gets its own SQLite file database. Redis, Redlock and the Stripe
gateway are replaced by in-memory fakes so the suite runs without services.
"""
import uuid
from typing import Any, AsyncGenerator, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from commerce.api.main import create_app
from commerce.config import Settings
from commerce.container import ServiceContainer
from commerce.core.locking import LockManager
from commerce.database.connection import create_session_factory, init_db
from commerce.database.models import Product, User
from commerce.integrations.stripe_gateway import GatewayCharge, GatewayRefund, StripeGateway
from tests.helpers import FakeRedis, FakeRedlock


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/commerce_test.db",
        redis_url="redis://localhost:6379/1",
        stripe_secret_key="sk_test_fake_key_for_testing",
        jwt_secret_key="test-secret",
        app_name="commerce-test",
        app_env="test",
        log_level="DEBUG",
        saga_max_attempts=2,
        saga_retry_base_delay=0.0,
        saga_step_timeout_seconds=5.0,
        outbox_max_attempts=3,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def fake_redlock() -> FakeRedlock:
    return FakeRedlock()


@pytest.fixture
def gateway() -> AsyncMock:
    """Stripe gateway mock; every charge and refund succeeds unless reconfigured."""
    mock_gateway = AsyncMock(spec=StripeGateway)

    async def _charge(
        amount_cents: int,
        currency: str,
        payment_method: str,
        idempotency_key: str,
        metadata: Any = None,
    ) -> GatewayCharge:
        return GatewayCharge(
            reference=f"pi_{uuid.uuid4().hex[:14]}",
            status="succeeded",
            amount_cents=amount_cents,
            currency=currency,
        )

    async def _refund(
        reference: str, amount_cents: int, idempotency_key: str, reason: Optional[str] = None
    ) -> GatewayRefund:
        return GatewayRefund(
            reference=f"re_{uuid.uuid4().hex[:14]}", status="succeeded", amount_cents=amount_cents
        )

    mock_gateway.charge.side_effect = _charge
    mock_gateway.refund.side_effect = _refund
    return mock_gateway


@pytest.fixture
def container(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    fake_redis: FakeRedis,
    fake_redlock: FakeRedlock,
    gateway: AsyncMock,
) -> ServiceContainer:
    return ServiceContainer(
        test_settings,
        session_factory,
        redis_client=fake_redis,
        locks=LockManager([test_settings.redis_url], redlock=fake_redlock),
        gateway=gateway,
    )


@pytest_asyncio.fixture
async def client(container: ServiceContainer) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(container)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def customer(container: ServiceContainer, db: AsyncSession) -> User:
    return await container.users.register(db, "customer@example.com", "customer-pass", "Casey Customer")


@pytest_asyncio.fixture
async def admin(container: ServiceContainer, db: AsyncSession) -> User:
    return await container.users.register(
        db, "admin@example.com", "admin-password", "Alex Admin", is_admin=True
    )


@pytest_asyncio.fixture
async def product(container: ServiceContainer, db: AsyncSession) -> Product:
    """A mug with 10 units on hand."""
    return await container.catalog.create_product(
        db,
        sku="mug-001",
        name="Ceramic Coffee Mug",
        category="Kitchen",
        price_cents=1500,
        description="Large ceramic mug for coffee and tea",
        weight_grams=400,
        initial_stock=10,
    )
