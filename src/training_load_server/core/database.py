"""Database engine and session management.

PostgreSQL (asyncpg) in production. A ``sqlite+aiosqlite`` URL also works
for local runs; it gets SQLite's default pool instead of the sized one.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from training_load_server.core.config import settings

logger = structlog.get_logger()

MIGRATION_TABLE = "alembic_version"


def create_engine(url: str | None = None) -> AsyncEngine:
    """Create the async database engine.

    Args:
        url: Database URL, defaults to the configured one

    Returns:
        Async SQLAlchemy engine
    """
    url = url or settings.database_url
    if make_url(url).get_backend_name() == "sqlite":
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        echo=False,
        pool_size=10,
        max_overflow=20,
        pool_recycle=300,  # Recycle connections every 5 minutes
        pool_pre_ping=True,
    )


engine = create_engine()
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def migration_version(db: AsyncEngine | None = None) -> str | None:
    """Current Alembic revision, or None if migrations were never applied."""
    async with (db or engine).connect() as conn:
        has_table = await conn.run_sync(
            lambda sync_conn: inspect(sync_conn).has_table(MIGRATION_TABLE)
        )
        if not has_table:
            return None
        result = await conn.execute(text(f"SELECT version_num FROM {MIGRATION_TABLE}"))
        return result.scalar_one_or_none()


async def init_database() -> None:
    """Verify the database is reachable and report the applied migration.

    Schema management belongs to Alembic; nothing is created here.
    """
    version = await migration_version()
    if version is None:
        logger.warning(
            "Database migrations have not been applied",
            hint="run 'alembic upgrade head'",
        )
    else:
        logger.info("Database ready", migration_version=version)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get a database session that commits on success and rolls back on error.

    Usage:
        async with get_session() as session:
            records = await session.execute(select(WorkoutRecord))
    """
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def close_database() -> None:
    """Close database connection pool."""
    await engine.dispose()
