"""Tests for the roll-forward scheduler."""

import asyncio
from datetime import date

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from training_load_server.core.clock import FixedClock
from training_load_server.core.config import Settings
from training_load_server.models.daily_metrics import DailyMetrics
from training_load_server.models.ingest_log import IngestLog
from training_load_server.services.scheduler import (
    MetricsScheduler,
    RollForwardTrigger,
    known_users,
)
from tests.fixtures import USER_ID, seed_workout

JUNE_1 = date(2024, 6, 1)


async def count_metrics(session_factory: async_sessionmaker[AsyncSession], user_id: str) -> int:
    async with session_factory() as session:
        stmt = select(func.count()).select_from(DailyMetrics).where(DailyMetrics.user_id == user_id)
        return await session.scalar(stmt)


class TestKnownUsers:
    """Users are discovered from every table that carries one."""

    @pytest.mark.asyncio
    async def test_users_from_workouts_and_ingest_logs(self, async_session: AsyncSession):
        await seed_workout(async_session, USER_ID, JUNE_1)
        await seed_workout(async_session, "athlete-2", JUNE_1)
        async_session.add(IngestLog(job_id="job-1", user_id="athlete-3", source="device_sync"))
        await async_session.commit()

        assert await known_users(async_session) == ["athlete-1", "athlete-2", "athlete-3"]

    @pytest.mark.asyncio
    async def test_no_users(self, async_session: AsyncSession):
        assert await known_users(async_session) == []


class TestRunCycle:
    """One pass over every user."""

    @pytest.mark.asyncio
    async def test_cycle_rolls_each_user_forward(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        clock: FixedClock,
    ):
        async with session_factory() as session:
            await seed_workout(session, USER_ID, JUNE_1)
            await seed_workout(session, "athlete-2", date(2024, 6, 5))
        scheduler = MetricsScheduler(session_factory, test_settings, clock)

        stats = await scheduler.run_cycle(RollForwardTrigger.MANUAL)

        assert stats["trigger"] == "manual"
        assert stats["users"] == 2
        assert stats["updated"] == 2
        assert stats["failed"] == 0
        assert await count_metrics(session_factory, USER_ID) == 10
        assert await count_metrics(session_factory, "athlete-2") == 6
        assert scheduler.last_run_stats == stats
        assert scheduler.last_run_at is not None

    @pytest.mark.asyncio
    async def test_second_cycle_same_day_is_a_no_op(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        clock: FixedClock,
    ):
        async with session_factory() as session:
            await seed_workout(session, USER_ID, JUNE_1)
        scheduler = MetricsScheduler(session_factory, test_settings, clock)
        await scheduler.run_cycle()

        stats = await scheduler.run_cycle()

        assert stats["updated"] == 0

    @pytest.mark.asyncio
    async def test_next_day_extends_the_chart(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        clock: FixedClock,
    ):
        async with session_factory() as session:
            await seed_workout(session, USER_ID, JUNE_1)
        scheduler = MetricsScheduler(session_factory, test_settings, clock)
        await scheduler.run_cycle()

        clock.advance(days=1)
        stats = await scheduler.run_cycle()

        assert stats["updated"] == 1
        assert await count_metrics(session_factory, USER_ID) == 11


class TestLifecycle:
    """Start, stop and status reporting."""

    @pytest.mark.asyncio
    async def test_disabled_scheduler_does_not_start(
        self, session_factory: async_sessionmaker[AsyncSession], test_settings: Settings
    ):
        scheduler = MetricsScheduler(session_factory, test_settings)

        await scheduler.start()

        assert not scheduler.is_running
        status = scheduler.get_status()
        assert status["enabled"] is False
        assert status["next_run_at"] is None
        assert status["last_run_at"] is None

    @pytest.mark.asyncio
    async def test_enabled_scheduler_reports_next_run(
        self, session_factory: async_sessionmaker[AsyncSession]
    ):
        config = Settings(
            _env_file=None, rollforward_enabled=True, rollforward_on_startup=False
        )
        scheduler = MetricsScheduler(session_factory, config)

        await scheduler.start()
        try:
            status = scheduler.get_status()
            assert status["is_running"]
            assert status["next_run_at"] is not None
        finally:
            await scheduler.stop()

        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_startup_run_is_tracked_and_stopped(
        self, session_factory: async_sessionmaker[AsyncSession]
    ):
        """The startup cycle is held by the scheduler and settled on stop."""
        config = Settings(_env_file=None, rollforward_enabled=True, rollforward_on_startup=True)
        scheduler = MetricsScheduler(session_factory, config)

        await scheduler.start()
        startup = scheduler._startup_task
        assert isinstance(startup, asyncio.Task)

        await scheduler.stop()

        assert startup.done()
        assert scheduler._startup_task is None
