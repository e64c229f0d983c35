"""Litestar application factory."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from advanced_alchemy.config.asyncio import AsyncSessionConfig
from litestar import Litestar
from litestar.contrib.sqlalchemy.plugins import SQLAlchemyAsyncConfig, SQLAlchemyPlugin
from litestar.openapi import OpenAPIConfig

from training_load_server import __version__
from training_load_server.api import api_routers
from training_load_server.core.config import settings
from training_load_server.core.database import (
    async_session_maker,
    close_database,
    engine,
    init_database,
)
from training_load_server.routes import root_redirect
from training_load_server.services.scheduler import MetricsScheduler, set_scheduler

# Configure structured logging
logging.basicConfig(format="%(message)s", level=settings.log_level)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: Litestar) -> AsyncIterator[None]:
    """Application lifespan manager.

    Handles startup and shutdown tasks:
    - Check database migrations on startup
    - Start the roll-forward scheduler
    - Stop the scheduler and close connections on shutdown
    """
    logger.info(
        "Starting training-load-server",
        version=__version__,
        timezone=settings.athlete_timezone,
        rollforward_enabled=settings.rollforward_enabled,
        rollforward_interval=settings.rollforward_interval_minutes,
    )

    await init_database()

    scheduler = MetricsScheduler(async_session_maker)
    set_scheduler(scheduler)
    await scheduler.start()

    yield

    await scheduler.stop()
    set_scheduler(None)

    await close_database()
    logger.info("Shutdown complete")


def create_app() -> Litestar:
    """Create Litestar application.

    Returns:
        Configured Litestar app instance
    """
    return Litestar(
        route_handlers=[root_redirect, *api_routers],
        lifespan=[lifespan],
        openapi_config=OpenAPIConfig(
            title="training-load-server API",
            version=__version__,
            description=(
                "Cross-source workout deduplication, Performance Management Chart "
                "and stress-score calibration"
            ),
        ),
        plugins=[
            SQLAlchemyPlugin(
                config=SQLAlchemyAsyncConfig(
                    engine_instance=engine,
                    session_dependency_key="session",
                    session_config=AsyncSessionConfig(expire_on_commit=False),
                ),
            ),
        ],
        debug=settings.log_level == "DEBUG",
    )


# Application instance
app = create_app()
