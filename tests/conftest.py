"""Pytest configuration."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from timeledger.core.config import get_settings
from timeledger.core.datetime_utils import Clock
from timeledger.db.session import create_engine_for, init_models
from timeledger.services.session_store import SessionStore
from timeledger.services.slot_store import SlotStore

# Friday
FIXED_NOW = datetime(2024, 1, 5, 12, 0, tzinfo=UTC)


class FakeNow:
    """Settable replacement for the clock's time source."""

    def __init__(self, current: datetime) -> None:
        self.current = current

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def mock_settings(monkeypatch, tmp_path):
    """Isolate settings from the developer's environment for all tests."""
    monkeypatch.delenv("TIMELEDGER_TIMEZONE", raising=False)
    monkeypatch.delenv("TIMELEDGER_STORE_MODE", raising=False)
    monkeypatch.setenv("TIMELEDGER_DATABASE_PATH", str(tmp_path / "test.db"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def fake_now():
    return FakeNow(FIXED_NOW)


@pytest.fixture
def clock(fake_now):
    return Clock(tz=UTC, now_func=fake_now)


@pytest.fixture(scope="function")
async def test_db_engine():
    """Create test database engine."""
    # Use in-memory SQLite for tests
    engine = create_engine_for("sqlite+aiosqlite:///:memory:")
    await init_models(engine)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
async def db(test_db_engine):
    """Create test database session."""
    async_session_maker = async_sessionmaker(
        test_db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def session_store(db, clock):
    return SessionStore(db, clock, short_id_length=8)


@pytest.fixture
def slot_store(db, clock):
    return SlotStore(db, clock, target_minutes=30)
