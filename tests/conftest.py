"""Shared test fixtures."""

from collections.abc import AsyncIterator
from datetime import UTC, datetime

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from training_load_server.core.clock import FixedClock
from training_load_server.core.config import Settings
from training_load_server.core.locks import KeyedLockManager
from training_load_server.models.base import Base


@pytest.fixture
async def async_engine():
    """Create async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Enable foreign keys for SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def async_session(session_factory) -> AsyncIterator[AsyncSession]:
    """Create async session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def test_settings() -> Settings:
    """Settings with defaults, independent of any .env file."""
    return Settings(_env_file=None, rollforward_enabled=False)


@pytest.fixture
def clock() -> FixedClock:
    """Clock pinned to 2024-06-10 12:00 UTC."""
    return FixedClock(datetime(2024, 6, 10, 12, 0, tzinfo=UTC))


@pytest.fixture
def locks() -> KeyedLockManager:
    return KeyedLockManager()
