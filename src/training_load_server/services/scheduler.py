"""Background roll-forward scheduler using APScheduler.

Daily metrics only exist for days a recompute has reached. This job keeps
the chart current for every athlete so decay continues through rest days,
and it settles recomputes left pending by cancelled or failed ingestion
batches.

Architecture:

    ┌──────────────────────────────────────────────────────────────────┐
    │                      MetricsScheduler                             │
    │                                                                   │
    │  ┌──────────────┐    ┌──────────────────────────────────────────┐ │
    │  │ APScheduler  │ -> │ roll_forward_all job                     │ │
    │  │ (interval)   │    │                                          │ │
    │  └──────────────┘    │  for each user (own session):            │ │
    │                      │    PMCService.roll_forward(user)         │ │
    │                      │    - extend metrics through today        │ │
    │                      │    - run pending ingest recomputes       │ │
    │                      └──────────────────────────────────────────┘ │
    └──────────────────────────────────────────────────────────────────┘

Configuration:
    ROLLFORWARD_ENABLED: Enable/disable the job
    ROLLFORWARD_INTERVAL_MINUTES: How often to run (default: 60)
    ROLLFORWARD_ON_STARTUP: Whether to run immediately on startup

Usage:
    # In app startup
    scheduler = MetricsScheduler(async_session_maker)
    await scheduler.start()

    # In app shutdown
    await scheduler.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, union
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from training_load_server.core.clock import Clock, utc_now
from training_load_server.core.config import Settings, settings as default_settings
from training_load_server.models.daily_metrics import DailyMetrics
from training_load_server.models.ingest_log import IngestLog
from training_load_server.models.workout import WorkoutRecord
from training_load_server.services.metrics import PMCService

if TYPE_CHECKING:
    from apscheduler.job import Job

logger = structlog.get_logger()


class RollForwardTrigger(str, Enum):
    """What started a roll-forward run."""

    SCHEDULER = "scheduler"
    STARTUP = "startup"
    MANUAL = "manual"


async def known_users(session: AsyncSession) -> list[str]:
    """Every user with workouts, metrics or ingestion history."""
    stmt = union(
        select(WorkoutRecord.user_id),
        select(DailyMetrics.user_id),
        select(IngestLog.user_id),
    )
    result = await session.execute(stmt)
    return sorted(row[0] for row in result.all())


class MetricsScheduler:
    """Periodically rolls every user's PMC forward.

    Attributes:
        session_factory: Async session factory for database access
        scheduler: APScheduler instance
        is_running: Whether scheduler is currently running
        last_run_at: Timestamp of last run
        last_run_stats: Stats from last run
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: Settings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.config = config or default_settings
        self.clock = clock
        self.scheduler = AsyncIOScheduler()
        self.is_running = False
        self.last_run_at: datetime | None = None
        self.last_run_stats: dict[str, object] | None = None
        self._job: Job | None = None
        self._startup_task: asyncio.Task[None] | None = None
        self.logger = logger.bind(component="metrics_scheduler")

    async def start(self) -> None:
        """Start the background scheduler."""
        if not self.config.rollforward_enabled:
            self.logger.info("Roll-forward scheduler disabled by configuration")
            return

        if self.is_running:
            self.logger.warning("Scheduler already running")
            return

        self.logger.info(
            "Starting roll-forward scheduler",
            interval_minutes=self.config.rollforward_interval_minutes,
            run_on_startup=self.config.rollforward_on_startup,
        )

        self._job = self.scheduler.add_job(
            self.run_cycle,
            trigger=IntervalTrigger(minutes=self.config.rollforward_interval_minutes),
            id="roll_forward_all_users",
            name="Roll PMC forward for all users",
            replace_existing=True,
            max_instances=1,  # Prevent overlapping runs
        )
        self.scheduler.start()
        self.is_running = True

        if self.config.rollforward_on_startup:
            # Run in background to not block startup
            self._startup_task = asyncio.create_task(self._run_startup())

    async def stop(self) -> None:
        """Stop the background scheduler gracefully."""
        if not self.is_running:
            return

        self.logger.info("Stopping roll-forward scheduler")
        if self._startup_task is not None and not self._startup_task.done():
            self._startup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._startup_task
        self._startup_task = None
        self.scheduler.shutdown(wait=True)
        self.is_running = False

    async def _run_startup(self) -> None:
        try:
            await self.run_cycle(trigger=RollForwardTrigger.STARTUP)
        except Exception as e:
            self.logger.error("Startup roll-forward failed", error=str(e))

    async def run_cycle(
        self, trigger: RollForwardTrigger = RollForwardTrigger.SCHEDULER
    ) -> dict[str, object]:
        """Roll forward every known user, each in its own session.

        A failure for one user is logged and counted; the others still run.
        """
        start_time = datetime.now(UTC)
        self.logger.info("Starting roll-forward cycle", trigger=trigger.value)

        async with self.session_factory() as session:
            users = await known_users(session)

        updated = 0
        failed = 0
        for user_id in users:
            try:
                async with self.session_factory() as session:
                    service = PMCService(session, self.config, clock=self.clock)
                    result = await service.roll_forward(user_id)
            except Exception as e:
                failed += 1
                self.logger.exception("Roll-forward failed", user_id=user_id, error=str(e))
                continue
            if result is not None:
                updated += 1

        end_time = datetime.now(UTC)
        self.last_run_at = end_time
        self.last_run_stats = {
            "trigger": trigger.value,
            "users": len(users),
            "updated": updated,
            "failed": failed,
            "duration_ms": int((end_time - start_time).total_seconds() * 1000),
        }
        self.logger.info("Roll-forward cycle complete", **self.last_run_stats)
        return self.last_run_stats

    def get_status(self) -> dict[str, object]:
        """Get scheduler status for monitoring."""
        next_run = None
        if self._job and self.is_running:
            next_run_time = self._job.next_run_time
            if next_run_time:
                next_run = next_run_time.isoformat()

        return {
            "enabled": self.config.rollforward_enabled,
            "is_running": self.is_running,
            "interval_minutes": self.config.rollforward_interval_minutes,
            "next_run_at": next_run,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_run_stats": self.last_run_stats,
        }


# Global scheduler instance (initialized in app startup)
_scheduler: MetricsScheduler | None = None


def get_scheduler() -> MetricsScheduler | None:
    """Get the global scheduler instance."""
    return _scheduler


def set_scheduler(scheduler: MetricsScheduler | None) -> None:
    """Set the global scheduler instance."""
    global _scheduler
    _scheduler = scheduler
