"""
Pytest configuration and fixtures.

Tests run against a file-backed SQLite database per test, so no
PostgreSQL is needed. Settings are read from the environment at import
time by the API module, so the required variables are set first.
"""
import os
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, Optional

os.environ["PAYME_MERCHANT_KEY"] = "test-merchant-key"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./payme_merchant_test.db"
os.environ["APP_ENV"] = "test"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from payme_merchant.api.main import app
from payme_merchant.api.routes import get_health_check, get_merchant_service
from payme_merchant.config import Settings
from payme_merchant.core.auth import (
    CredentialValidator,
    MerchantCredentials,
    build_authorization_header,
)
from payme_merchant.core.merchant_service import PaymeMerchantService
from payme_merchant.core.state_machine import OrderPolicy
from payme_merchant.database.connection import create_session_factory
from payme_merchant.database.models import (
    Base,
    Order,
    OrderStatus,
    PaymeTransaction,
    PaymeTransactionEvent,
)
from payme_merchant.monitoring.health import HealthCheck

from tests.support import TEST_MERCHANT_KEY, TEST_MERCHANT_LOGIN, FakeClock, rpc_body


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings."""
    return Settings(
        payme_merchant_key=TEST_MERCHANT_KEY,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'payme.db'}",
        app_name="payme-merchant-test",
        app_env="test",
        log_level="DEBUG",
        store_retry_max_attempts=10,
        store_retry_base_delay=0.01,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create test database engine with a fresh schema."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def orders(session_factory: async_sessionmaker[AsyncSession]) -> Dict[str, Order]:
    """Seed the orders used across tests."""
    seeded = {
        "o1": Order(order_id="o1", user_id="u1", plan_id="premium", amount=100000),
        "o2": Order(order_id="o2", user_id="u2", plan_id="basic", amount=50000),
        "o-paid": Order(
            order_id="o-paid", user_id="u3", amount=20000, status=OrderStatus.PAID.value
        ),
        "o-failed": Order(
            order_id="o-failed", user_id="u4", amount=30000, status=OrderStatus.FAILED.value
        ),
    }
    async with session_factory() as session:
        async with session.begin():
            session.add_all(seeded.values())
    return seeded


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def credentials() -> MerchantCredentials:
    return MerchantCredentials(login=TEST_MERCHANT_LOGIN, key=TEST_MERCHANT_KEY)


@pytest.fixture
def auth_header() -> str:
    """Valid Authorization header for key mode."""
    return build_authorization_header(TEST_MERCHANT_LOGIN, TEST_MERCHANT_KEY)


@pytest.fixture
def policy() -> OrderPolicy:
    return OrderPolicy()


@pytest.fixture
def service(
    session_factory: async_sessionmaker[AsyncSession],
    credentials: MerchantCredentials,
    policy: OrderPolicy,
    clock: FakeClock,
) -> PaymeMerchantService:
    """Merchant service wired to the test database and fake clock."""
    return PaymeMerchantService(
        session_factory=session_factory,
        validator=CredentialValidator(credentials),
        policy=policy,
        clock=clock,
        retry_attempts=10,
        retry_base_delay=0.01,
    )


@pytest.fixture
def rpc(service: PaymeMerchantService, auth_header: str) -> Any:
    """Call the service with a valid Authorization header."""

    async def call(
        method: str,
        params: Dict[str, Any],
        request_id: Any = 1,
        authorization: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await service.handle(
            rpc_body(method, params, request_id), authorization or auth_header
        )

    return call


@pytest.fixture
def load_order(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    """Read an order straight from the database."""

    async def load(order_id: str) -> Optional[Order]:
        async with session_factory() as session:
            return await session.get(Order, order_id)

    return load


@pytest.fixture
def load_transactions(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    """Read all stored transactions for an order."""

    async def load(order_id: str) -> list[PaymeTransaction]:
        async with session_factory() as session:
            result = await session.execute(
                select(PaymeTransaction).where(PaymeTransaction.order_id == order_id)
            )
            return list(result.scalars().all())

    return load


@pytest.fixture
def load_events(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    """Read the audit events for a transaction, oldest first."""

    async def load(transaction_id: str) -> list[PaymeTransactionEvent]:
        async with session_factory() as session:
            result = await session.execute(
                select(PaymeTransactionEvent)
                .where(PaymeTransactionEvent.transaction_id == transaction_id)
                .order_by(PaymeTransactionEvent.id)
            )
            return list(result.scalars().all())

    return load


@pytest_asyncio.fixture
async def client(
    service: PaymeMerchantService,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client bound to the test database."""
    app.dependency_overrides[get_merchant_service] = lambda: service
    app.dependency_overrides[get_health_check] = lambda: HealthCheck(session_factory)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
