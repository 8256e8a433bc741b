"""
Centralized Test Configuration.
"""

from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import Pool, StaticPool

from backend.app.main import app
from backend.app.core.config import Settings
from backend.app.core.dependencies import get_expiration_scheduler, get_ledger_service
from backend.app.db.session import get_db, Base
from backend.app.domain.credits.expiration import ExpirationScheduler
from backend.app.domain.credits.ledger_service import LedgerService
from backend.app.domain.credits.locks import UserLockRegistry
from backend.app.models.credit_enums import Season
from backend.app.services.week_registry import SqlWeekRegistry

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

START = datetime(2026, 1, 10, 12, 0, 0)


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


class MutableClock:
    """Injectable clock so tests can move time past expiration dates."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> datetime:
        self.now = moment
        return self.now


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def clock():
    return MutableClock(START)


@pytest.fixture
def test_settings():
    return Settings(
        collaborator_timeout_seconds=2.0,
        expiration_sweep_enabled=False,
    )


@pytest.fixture
def locks():
    return UserLockRegistry()


@pytest.fixture
def week_registry(clock):
    return SqlWeekRegistry(clock=clock)


@pytest.fixture
def ledger_service(week_registry, locks, clock, test_settings):
    return LedgerService(
        TestingSessionLocal,
        week_registry,
        settings=test_settings,
        locks=locks,
        clock=clock,
    )


@pytest.fixture
def expiration_scheduler(locks, clock, test_settings):
    return ExpirationScheduler(
        TestingSessionLocal,
        locks,
        settings=test_settings,
        clock=clock,
    )


@pytest.fixture
def make_week(week_registry):
    """Register a week owned by 'owner_id' and return its ID."""
    async def _make_week(owner_id: int, season: Season = Season.RED) -> int:
        async with TestingSessionLocal() as session:
            async with session.begin():
                week = await week_registry.register(session, owner_id=owner_id, season=season)
        return week.id

    return _make_week


@pytest.fixture(autouse=True)
def apply_overrides(ledger_service, expiration_scheduler):
    """Point the app at the test database and the per-test services."""

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ledger_service] = lambda: ledger_service
    app.dependency_overrides[get_expiration_scheduler] = lambda: expiration_scheduler
    yield

    app.dependency_overrides = {}


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session
