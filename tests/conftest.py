"""
Test configuration and fixtures for SatLend backend tests.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RATE_PROVIDER", "static")

import pytest
from typing import AsyncGenerator
from decimal import Decimal

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from httpx import AsyncClient, ASGITransport

from app.core.database import Base, get_db, get_redis
from app.core.rates import StaticRateProvider, get_rate_provider
from main import app


# ============================================================
# Database Fixtures
# ============================================================

# Use SQLite for testing (in-memory)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_BTC_USD_RATE = Decimal("40000")


@pytest.fixture
async def test_engine():
    """Create test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for each test"""
    async_session = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session() as session:
        yield session
        await session.rollback()


class FakeRedis:
    """Minimal async stand-in for the Redis calls the app makes"""

    def __init__(self):
        self.store = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        return True

    async def setex(self, key, ttl, value):
        self.store[key] = value
        return True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def rate_provider():
    return StaticRateProvider(TEST_BTC_USD_RATE)


@pytest.fixture
async def client(db_session, fake_redis, rate_provider) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with database, redis and rate overrides"""

    async def override_get_db():
        yield db_session

    async def override_get_redis():
        return fake_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_rate_provider] = lambda: rate_provider

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ============================================================
# User Fixtures
# ============================================================

async def create_user(session, email, balance="0", wallet_address=None, password_hash="not-a-real-hash"):
    from app.modules.users.models import User, AccountStatus

    user = User(
        email=email,
        hashed_password=password_hash,
        display_name=email.split("@")[0].title(),
        account_status=AccountStatus.ACTIVE,
        balance=Decimal(balance),
        wallet_address=wallet_address,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


@pytest.fixture
async def borrower(db_session):
    """User who posts loan requests"""
    return await create_user(db_session, "alice@example.com", balance="0.5")


@pytest.fixture
async def lender(db_session):
    """User with funds to lend"""
    return await create_user(db_session, "bob@example.com", balance="5")


@pytest.fixture
async def other_lender(db_session):
    return await create_user(db_session, "carol@example.com", balance="5")


def auth_headers_for(user):
    from app.core.security import create_access_token

    token = create_access_token(data={"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def borrower_headers(borrower):
    return auth_headers_for(borrower)


@pytest.fixture
def lender_headers(lender):
    return auth_headers_for(lender)


@pytest.fixture
def make_user(db_session):
    """Factory for additional users"""
    async def _make(email, balance="0", wallet_address=None, password_hash="not-a-real-hash"):
        return await create_user(db_session, email, balance, wallet_address, password_hash)
    return _make


@pytest.fixture
def headers_for():
    return auth_headers_for
