from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from helpers import FakePaymentGateway, FrozenClock
from main import app
from routers import rate_limit
from services.clock import get_clock
from services.payments import get_payment_gateway


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def billing_settings(monkeypatch):
    monkeypatch.setattr(settings, "INITIAL_CREDITS", Decimal("5.00"))
    monkeypatch.setattr(settings, "MINIMUM_TOPUP", Decimal("5.00"))
    monkeypatch.setattr(settings, "SANDBOX_HOURLY_RATE", Decimal("0.85"))
    monkeypatch.setattr(settings, "SANDBOX_DAILY_RATE", Decimal("2.00"))
    monkeypatch.setattr(settings, "SANDBOX_MIN_START_BALANCE", Decimal("0.10"))
    monkeypatch.setattr(settings, "SANDBOX_JOBS_PER_DAY", 5)
    monkeypatch.setattr(settings, "LEDGER_MAX_RETRIES", 3)
    monkeypatch.setattr(settings, "BILLING_ENABLED", True)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "billing.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest_asyncio.fixture
async def api_client(session_maker, clock, gateway):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_clock, None)
    app.dependency_overrides.pop(get_payment_gateway, None)
