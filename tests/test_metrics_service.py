"""Tests for store-backed PMC recompute, anchoring and roll-forward."""

import math
from datetime import date, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from training_load_server.core.cancellation import CancelToken
from training_load_server.core.clock import FixedClock
from training_load_server.core.config import Settings
from training_load_server.core.locks import KeyedLockManager
from training_load_server.core.validation import InvalidCorrectionError
from training_load_server.models.daily_metrics import DailyMetrics, MetricProvenance
from training_load_server.models.ingest_log import IngestLog
from training_load_server.services.metrics import PMCService, RecomputeFailedError
from tests.fixtures import USER_ID, seed_daily_stress, seed_workout

JUNE_1 = date(2024, 6, 1)
JUNE_10 = date(2024, 6, 10)
WEEK = [50.0, 0.0, 80.0, 0.0, 0.0, 0.0, 0.0]


class CancelAfter(CancelToken):
    """Token that reports cancellation once it has been checked ``checks`` times."""

    def __init__(self, checks: int) -> None:
        super().__init__()
        self.remaining = checks

    @property
    def cancelled(self) -> bool:
        if self.remaining <= 0:
            return True
        self.remaining -= 1
        return False


@pytest.fixture
def service(
    async_session: AsyncSession,
    test_settings: Settings,
    locks: KeyedLockManager,
    clock: FixedClock,
) -> PMCService:
    return PMCService(async_session, test_settings, locks, clock)


async def load_values(
    service: PMCService, user_id: str = USER_ID
) -> dict[date, tuple[float, float, float]]:
    rows = await service.get_metrics(user_id, JUNE_1 - timedelta(days=30), JUNE_10)
    return {row.date: (row.ctl, row.atl, row.tsb) for row in rows}


class TestRecompute:
    """Recompute passes over stored daily stress."""

    @pytest.mark.asyncio
    async def test_recompute_writes_every_day_through_today(
        self, async_session: AsyncSession, service: PMCService
    ):
        await seed_daily_stress(async_session, WEEK, JUNE_1)

        result = await service.recompute_from(USER_ID, JUNE_1)

        assert result.days_written == 10
        assert result.completed_through == JUNE_10
        assert not result.cancelled
        day_7 = await service.get_day(USER_ID, JUNE_1 + timedelta(days=6))
        assert day_7.ctl == pytest.approx(2.731, abs=1e-3)
        assert day_7.atl == pytest.approx(8.839, abs=1e-3)
        assert day_7.tsb == pytest.approx(day_7.ctl - day_7.atl)
        assert day_7.total_stress == 0.0

    @pytest.mark.asyncio
    async def test_recompute_is_idempotent(
        self, async_session: AsyncSession, service: PMCService
    ):
        await seed_daily_stress(async_session, WEEK, JUNE_1)

        await service.recompute_from(USER_ID, JUNE_1)
        first = await load_values(service)
        await service.recompute_from(USER_ID, JUNE_1)
        second = await load_values(service)

        assert first == second
        count = await async_session.scalar(select(func.count()).select_from(DailyMetrics))
        assert count == 10

    @pytest.mark.asyncio
    async def test_partial_recompute_matches_full_recompute(
        self, async_session: AsyncSession, service: PMCService
    ):
        """Starting mid-range seeds from the stored previous day."""
        await seed_daily_stress(async_session, WEEK, JUNE_1)
        await service.recompute_from(USER_ID, JUNE_1)
        full = await load_values(service)

        await service.recompute_from(USER_ID, JUNE_1 + timedelta(days=4))

        partial = await load_values(service)
        assert partial.keys() == full.keys()
        for day, values in full.items():
            assert partial[day] == pytest.approx(values)

    @pytest.mark.asyncio
    async def test_recompute_starts_at_earliest_workout_without_history(
        self, async_session: AsyncSession, service: PMCService
    ):
        await seed_daily_stress(async_session, WEEK, JUNE_1)

        result = await service.recompute_from(USER_ID, JUNE_1 + timedelta(days=3))

        assert result.start == JUNE_1
        assert await service.get_day(USER_ID, JUNE_1) is not None

    @pytest.mark.asyncio
    async def test_other_users_are_untouched(
        self, async_session: AsyncSession, service: PMCService
    ):
        await seed_daily_stress(async_session, WEEK, JUNE_1)
        await seed_workout(async_session, "someone-else", JUNE_1, 300.0)

        await service.recompute_from(USER_ID, JUNE_1)

        day_1 = await service.get_day(USER_ID, JUNE_1)
        assert day_1.total_stress == 50.0
        assert await service.latest("someone-else") is None


class TestCancellation:
    """Cancellation stops at a day boundary with earlier days committed."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start_writes_nothing(
        self, async_session: AsyncSession, service: PMCService
    ):
        await seed_daily_stress(async_session, WEEK, JUNE_1)
        token = CancelToken()
        token.cancel("test")

        result = await service.recompute_from(USER_ID, JUNE_1, cancel=token)

        assert result.cancelled
        assert result.days_written == 0
        assert result.completed_through is None
        assert await service.latest(USER_ID) is None

    @pytest.mark.asyncio
    async def test_cancelled_mid_pass_keeps_finished_days(
        self, async_session: AsyncSession, service: PMCService
    ):
        await seed_daily_stress(async_session, WEEK, JUNE_1)

        result = await service.recompute_from(USER_ID, JUNE_1, cancel=CancelAfter(3))

        assert result.cancelled
        assert result.days_written == 3
        assert result.completed_through == JUNE_1 + timedelta(days=2)
        latest = await service.latest(USER_ID)
        assert latest.date == JUNE_1 + timedelta(days=2)

    @pytest.mark.asyncio
    async def test_rerun_after_cancel_matches_uninterrupted_run(
        self, async_session: AsyncSession, service: PMCService
    ):
        """A second athlete with the same training serves as the uninterrupted run."""
        await seed_daily_stress(async_session, WEEK, JUNE_1)
        await seed_daily_stress(async_session, WEEK, JUNE_1, user_id="twin")

        await service.recompute_from(USER_ID, JUNE_1, cancel=CancelAfter(4))
        await service.recompute_from(USER_ID, JUNE_1)
        await service.recompute_from("twin", JUNE_1)

        resumed = await load_values(service)
        uninterrupted = await load_values(service, "twin")
        assert resumed.keys() == uninterrupted.keys()
        for day, values in resumed.items():
            assert values == pytest.approx(uninterrupted[day])


class TestStorageFailure:
    """A failed commit rolls back its chunk and leaves earlier chunks in place."""

    @pytest.mark.asyncio
    async def test_failed_chunk_is_rolled_back_and_rerun_converges(
        self,
        async_session: AsyncSession,
        locks: KeyedLockManager,
        clock: FixedClock,
        monkeypatch: pytest.MonkeyPatch,
    ):
        config = Settings(_env_file=None, rollforward_enabled=False, pmc_commit_chunk_days=2)
        service = PMCService(async_session, config, locks, clock)
        await seed_daily_stress(async_session, WEEK, JUNE_1)
        await seed_daily_stress(async_session, WEEK, JUNE_1, user_id="twin")
        await service.recompute_from("twin", JUNE_1)
        uninterrupted = await load_values(service, "twin")

        real_commit = async_session.commit
        calls = 0

        async def failing_second_commit() -> None:
            nonlocal calls
            calls += 1
            if calls == 2:
                raise OperationalError("UPDATE daily_metrics", {}, Exception("disk I/O error"))
            await real_commit()

        monkeypatch.setattr(async_session, "commit", failing_second_commit)

        with pytest.raises(RecomputeFailedError) as excinfo:
            await service.recompute_from(USER_ID, JUNE_1)

        assert excinfo.value.day == date(2024, 6, 4)
        assert excinfo.value.last_committed == date(2024, 6, 2)
        kept = await service.get_metrics(USER_ID, JUNE_1, JUNE_10)
        assert [row.date for row in kept] == [JUNE_1, date(2024, 6, 2)]

        monkeypatch.undo()
        result = await service.recompute_from(USER_ID, JUNE_1)

        assert result.completed_through == JUNE_10
        rerun = await load_values(service)
        assert rerun.keys() == uninterrupted.keys()
        for day, values in rerun.items():
            assert values == pytest.approx(uninterrupted[day])


class TestAnchoring:
    """Manual CTL/ATL anchors."""

    @pytest.mark.asyncio
    async def test_anchor_leaves_earlier_days_unchanged(
        self, async_session: AsyncSession, service: PMCService
    ):
        await seed_daily_stress(async_session, WEEK, JUNE_1)
        await service.recompute_from(USER_ID, JUNE_1)
        before = await load_values(service)
        anchor_day = JUNE_1 + timedelta(days=4)

        result = await service.anchor(USER_ID, anchor_day, ctl=40.0, atl=30.0)

        after = await load_values(service)
        for day, values in before.items():
            if day < anchor_day:
                assert after[day] == values
        assert after[anchor_day] == (40.0, 30.0, 10.0)
        following = anchor_day + timedelta(days=1)
        assert after[following][0] == pytest.approx(40.0 * math.exp(-1 / 42))
        assert after[following][1] == pytest.approx(30.0 * math.exp(-1 / 7))
        assert result.previous_ctl == pytest.approx(before[anchor_day][0])
        assert result.ctl_delta == pytest.approx(40.0 - before[anchor_day][0])

    @pytest.mark.asyncio
    async def test_anchor_remembers_calculated_values(
        self, async_session: AsyncSession, service: PMCService
    ):
        await seed_daily_stress(async_session, WEEK, JUNE_1)
        await service.recompute_from(USER_ID, JUNE_1)
        anchor_day = JUNE_1 + timedelta(days=4)
        model = await service.get_day(USER_ID, anchor_day)
        model_ctl = model.ctl

        await service.anchor(USER_ID, anchor_day, ctl=40.0, atl=30.0)
        second = await service.anchor(USER_ID, anchor_day, ctl=45.0, atl=30.0)

        row = await service.get_day(USER_ID, anchor_day)
        assert row.anchored
        assert row.provenance == MetricProvenance.ANCHORED.value
        assert row.calculated_ctl == pytest.approx(model_ctl)
        assert second.previous_ctl == pytest.approx(model_ctl)

    @pytest.mark.asyncio
    async def test_anchored_day_survives_later_recompute(
        self, async_session: AsyncSession, service: PMCService
    ):
        await seed_daily_stress(async_session, WEEK, JUNE_1)
        await service.recompute_from(USER_ID, JUNE_1)
        anchor_day = JUNE_1 + timedelta(days=4)
        await service.anchor(USER_ID, anchor_day, ctl=40.0, atl=30.0)

        await service.recompute_from(USER_ID, JUNE_1)

        row = await service.get_day(USER_ID, anchor_day)
        assert (row.ctl, row.atl) == (40.0, 30.0)

    @pytest.mark.asyncio
    async def test_anchor_without_existing_metrics(
        self, async_session: AsyncSession, service: PMCService
    ):
        await seed_daily_stress(async_session, WEEK, JUNE_1)

        result = await service.anchor(USER_ID, JUNE_1 + timedelta(days=2), ctl=20.0, atl=25.0)

        assert result.previous_ctl is not None
        assert (await service.latest(USER_ID)).date == JUNE_10

    @pytest.mark.asyncio
    async def test_invalid_anchor_writes_nothing(
        self, async_session: AsyncSession, service: PMCService
    ):
        await seed_daily_stress(async_session, WEEK, JUNE_1)

        with pytest.raises(InvalidCorrectionError):
            await service.anchor(USER_ID, JUNE_1, ctl=-5.0, atl=10.0)

        assert await service.latest(USER_ID) is None

    @pytest.mark.asyncio
    async def test_clear_anchor_restores_model_values(
        self, async_session: AsyncSession, service: PMCService
    ):
        await seed_daily_stress(async_session, WEEK, JUNE_1)
        await service.recompute_from(USER_ID, JUNE_1)
        before = await load_values(service)
        anchor_day = JUNE_1 + timedelta(days=4)
        await service.anchor(USER_ID, anchor_day, ctl=40.0, atl=30.0)

        result = await service.clear_anchor(USER_ID, anchor_day)

        assert result is not None
        after = await load_values(service)
        for day, values in before.items():
            assert after[day] == pytest.approx(values)
        assert await service.clear_anchor(USER_ID, anchor_day) is None


class TestRollForward:
    """Keeping the chart current through today."""

    @pytest.mark.asyncio
    async def test_roll_forward_fills_through_today(
        self, async_session: AsyncSession, service: PMCService
    ):
        await seed_daily_stress(async_session, WEEK, JUNE_1)

        result = await service.roll_forward(USER_ID)

        assert result is not None
        assert result.completed_through == JUNE_10
        assert await service.roll_forward(USER_ID) is None

    @pytest.mark.asyncio
    async def test_roll_forward_extends_by_new_days(
        self, async_session: AsyncSession, service: PMCService, clock: FixedClock
    ):
        await seed_daily_stress(async_session, WEEK, JUNE_1)
        await service.roll_forward(USER_ID)
        clock.advance(days=2)

        result = await service.roll_forward(USER_ID)

        assert result.start == JUNE_10 + timedelta(days=1)
        assert result.days_written == 2

    @pytest.mark.asyncio
    async def test_roll_forward_settles_pending_ingest_recompute(
        self, async_session: AsyncSession, service: PMCService
    ):
        await seed_daily_stress(async_session, WEEK, JUNE_1)
        await service.roll_forward(USER_ID)
        log = IngestLog(
            user_id=USER_ID,
            job_id="job-1",
            source="device_sync",
            recompute_from=JUNE_1 + timedelta(days=2),
            pmc_recomputed=False,
        )
        async_session.add(log)
        await async_session.commit()

        result = await service.roll_forward(USER_ID)

        assert result is not None
        assert result.start == JUNE_1 + timedelta(days=2)
        await async_session.refresh(log)
        assert log.pmc_recomputed
        assert await service.pending_recompute_from(USER_ID) is None

    @pytest.mark.asyncio
    async def test_roll_forward_without_data(self, service: PMCService):
        assert await service.roll_forward(USER_ID) is None
