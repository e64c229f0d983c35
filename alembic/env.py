"""Alembic migration environment.

Migrations run on a synchronous connection: asyncpg URLs are switched to
psycopg and aiosqlite URLs to the built-in sqlite driver.
"""

from logging.config import fileConfig

from sqlalchemy import create_engine, pool
from sqlalchemy.engine import URL, Connection, make_url

from alembic import context

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

from training_load_server.core.config import settings  # noqa: E402
from training_load_server.models import (  # noqa: E402, F401
    CalibrationDataPoint,
    DailyMetrics,
    IngestLog,
    ScalingProfile,
    WorkoutLink,
    WorkoutRecord,
)
from training_load_server.models.base import Base  # noqa: E402

target_metadata = Base.metadata

SYNC_DRIVERS = {
    "postgresql+asyncpg": "postgresql+psycopg",
    "sqlite+aiosqlite": "sqlite",
}


def sync_database_url() -> URL:
    url = make_url(settings.database_url)
    return url.set(drivername=SYNC_DRIVERS.get(url.drivername, url.drivername))


def configure(**kwargs: object) -> None:
    url = sync_database_url()
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        # SQLite cannot ALTER most constraints in place
        render_as_batch=url.get_backend_name() == "sqlite",
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit migration SQL for the configured URL without connecting."""
    configure(
        url=sync_database_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(sync_database_url(), poolclass=pool.NullPool)
    with connectable.connect() as connection:
        do_run_migrations(connection)


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
