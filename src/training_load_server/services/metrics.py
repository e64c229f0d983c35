"""Store-backed PMC maintenance.

Runs the PMC calculator over stored daily stress and writes DailyMetrics
rows, one calendar day per unit of work:

    ┌───────────────────────────────────────────────────────────────┐
    │ recompute_from(user, start)          [pass lock: pmc:{user}]  │
    │                                                               │
    │   seed = metrics[start - 1]  (or zero load)                   │
    │   pinned = anchored rows in [start, end]                      │
    │   stress = DailyAggregator.daily_stress(start, end)           │
    │                                                               │
    │   for each day:            [date lock: metrics:{user}:{day}]  │
    │       cancel? -> commit finished days, stop                   │
    │       write row                                               │
    │       every N days -> commit                                  │
    └───────────────────────────────────────────────────────────────┘

A storage failure rolls back the unfinished chunk and raises
RecomputeFailedError. Chunks committed before it stay valid because every
day is a pure function of the previous day and that day's stress, so the
caller can rerun the whole pass.
"""

from dataclasses import dataclass
from datetime import date, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from training_load_server.core.cancellation import CancelToken
from training_load_server.core.clock import Clock, utc_now
from training_load_server.core.config import Settings, settings as default_settings
from training_load_server.core.dates import local_day
from training_load_server.core.locks import (
    KeyedLockManager,
    lock_manager,
    metrics_day_key,
    recompute_pass_key,
)
from training_load_server.core.validation import validate_anchor
from training_load_server.models.daily_metrics import DailyMetrics, MetricProvenance
from training_load_server.models.ingest_log import IngestLog
from training_load_server.services.aggregation import DailyAggregator
from training_load_server.services.pmc import Anchor, PMCCalculator, PMCPoint

logger = structlog.get_logger()


class RecomputeFailedError(Exception):
    """A recompute pass could not write a day; earlier chunks are committed."""

    def __init__(self, user_id: str, day: date, last_committed: date | None) -> None:
        self.user_id = user_id
        self.day = day
        self.last_committed = last_committed
        super().__init__(f"PMC recompute for {user_id} failed at {day.isoformat()}")


@dataclass(frozen=True)
class RecomputeResult:
    """Outcome of one recompute pass."""

    user_id: str
    start: date
    end: date
    days_written: int
    cancelled: bool = False
    completed_through: date | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "userId": self.user_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "daysWritten": self.days_written,
            "cancelled": self.cancelled,
            "completedThrough": self.completed_through.isoformat()
            if self.completed_through
            else None,
        }


@dataclass(frozen=True)
class AnchorResult:
    """Outcome of pinning a day's CTL/ATL."""

    day: date
    ctl: float
    atl: float
    previous_ctl: float | None
    previous_atl: float | None
    recompute: RecomputeResult

    @property
    def ctl_delta(self) -> float | None:
        return None if self.previous_ctl is None else self.ctl - self.previous_ctl

    @property
    def atl_delta(self) -> float | None:
        return None if self.previous_atl is None else self.atl - self.previous_atl


class PMCService:
    """Keeps DailyMetrics in step with workout stress for one session."""

    def __init__(
        self,
        session: AsyncSession,
        config: Settings | None = None,
        locks: KeyedLockManager | None = None,
        clock: Clock = utc_now,
        calculator: PMCCalculator | None = None,
    ) -> None:
        self.session = session
        self.config = config or default_settings
        self.locks = locks or lock_manager
        self.clock = clock
        self.calculator = calculator or PMCCalculator(
            self.config.ctl_time_constant_days, self.config.atl_time_constant_days
        )
        self.aggregator = DailyAggregator(session)
        self.logger = logger.bind(service="pmc")

    def today(self) -> date:
        return local_day(self.clock(), self.config.athlete_timezone)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_metrics(self, user_id: str, start: date, end: date) -> list[DailyMetrics]:
        stmt = (
            select(DailyMetrics)
            .where(
                DailyMetrics.user_id == user_id,
                DailyMetrics.date >= start,
                DailyMetrics.date <= end,
            )
            .order_by(DailyMetrics.date)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_day(self, user_id: str, day: date) -> DailyMetrics | None:
        stmt = select(DailyMetrics).where(DailyMetrics.user_id == user_id, DailyMetrics.date == day)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def latest(self, user_id: str) -> DailyMetrics | None:
        stmt = (
            select(DailyMetrics)
            .where(DailyMetrics.user_id == user_id)
            .order_by(DailyMetrics.date.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    async def recompute_from(
        self,
        user_id: str,
        start: date,
        end: date | None = None,
        cancel: CancelToken | None = None,
    ) -> RecomputeResult:
        """Recompute every day from ``start`` through ``end`` (default today)."""
        async with self.locks.acquire(recompute_pass_key(user_id)):
            return await self._recompute(user_id, start, end, cancel)

    async def _recompute(
        self,
        user_id: str,
        start: date,
        end: date | None,
        cancel: CancelToken | None,
    ) -> RecomputeResult:
        seed = await self.get_day(user_id, start - timedelta(days=1))
        if seed is None:
            earliest = await self.aggregator.earliest_activity_date(user_id)
            if earliest is not None and earliest < start:
                start = earliest
                seed = await self.get_day(user_id, start - timedelta(days=1))

        end = max(end or self.today(), start)
        existing = {row.date: row for row in await self.get_metrics(user_id, start, end)}
        pinned = {
            day: Anchor(day, row.ctl, row.atl) for day, row in existing.items() if row.anchored
        }
        daily = await self.aggregator.daily_stress(user_id, start, end)

        if seed is not None:
            points = self.calculator.recompute(
                daily, anchor=Anchor(seed.date, seed.ctl, seed.atl), end=end, pinned=pinned
            )[1:]
        else:
            points = self.calculator.recompute(daily, end=end, pinned=pinned)

        self.logger.info(
            "Starting PMC recompute",
            user_id=user_id,
            start=start.isoformat(),
            end=end.isoformat(),
            seeded=seed is not None,
            pinned_days=len(pinned),
        )
        return await self._write_points(user_id, start, end, points, existing, cancel)

    async def _write_points(
        self,
        user_id: str,
        start: date,
        end: date,
        points: list[PMCPoint],
        existing: dict[date, DailyMetrics],
        cancel: CancelToken | None,
    ) -> RecomputeResult:
        chunk_size = max(1, self.config.pmc_commit_chunk_days)
        written = 0
        last_committed: date | None = None
        pending: date | None = None
        in_chunk = 0

        for point in points:
            if cancel is not None and cancel.cancelled:
                await self._commit(user_id, point.day, last_committed)
                last_committed = pending or last_committed
                self.logger.info(
                    "PMC recompute cancelled",
                    user_id=user_id,
                    completed_through=last_committed.isoformat() if last_committed else None,
                    reason=cancel.reason,
                )
                return RecomputeResult(user_id, start, end, written, True, last_committed)

            async with self.locks.acquire(metrics_day_key(user_id, point.day)):
                self._write_day(user_id, point, existing.get(point.day))
            written += 1
            in_chunk += 1
            pending = point.day

            if in_chunk >= chunk_size:
                await self._commit(user_id, point.day, last_committed)
                last_committed = pending
                in_chunk = 0

        if in_chunk:
            await self._commit(user_id, pending, last_committed)
            last_committed = pending

        self.logger.info(
            "PMC recompute complete",
            user_id=user_id,
            days_written=written,
            completed_through=last_committed.isoformat() if last_committed else None,
        )
        return RecomputeResult(user_id, start, end, written, False, last_committed)

    def _write_day(self, user_id: str, point: PMCPoint, row: DailyMetrics | None) -> None:
        if row is None:
            row = DailyMetrics(user_id=user_id, date=point.day, anchored=False)
            self.session.add(row)
        row.total_stress = point.total_stress
        if row.anchored:
            # Pinned days keep their values; only the stress total follows the records
            return
        row.set_load(point.ctl, point.atl)
        row.provenance = point.provenance.value

    async def _commit(self, user_id: str, day: date, last_committed: date | None) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(
                "PMC recompute write failed",
                user_id=user_id,
                day=day.isoformat(),
                last_committed=last_committed.isoformat() if last_committed else None,
                error=str(e),
            )
            raise RecomputeFailedError(user_id, day, last_committed) from e

    # ------------------------------------------------------------------
    # Anchoring
    # ------------------------------------------------------------------

    async def anchor(
        self,
        user_id: str,
        day: date,
        ctl: float,
        atl: float,
        tsb: float | None = None,
        cancel: CancelToken | None = None,
    ) -> AnchorResult:
        """Pin ``day`` to the given CTL/ATL and recompute the days after it.

        Values are validated before anything is written. Days before ``day``
        are not touched.

        Raises:
            InvalidCorrectionError: If CTL/ATL (or a supplied TSB) are out of range
        """
        ctl, atl = validate_anchor(ctl, atl, tsb)

        async with self.locks.acquire(recompute_pass_key(user_id)):
            row = await self.get_day(user_id, day)
            if row is None:
                # Make sure the model's own value for the day exists first
                await self._recompute(user_id, day, day, None)
                row = await self.get_day(user_id, day)

            if row.anchored:
                previous_ctl, previous_atl = row.calculated_ctl, row.calculated_atl
            else:
                previous_ctl, previous_atl = row.ctl, row.atl

            async with self.locks.acquire(metrics_day_key(user_id, day)):
                row.calculated_ctl = previous_ctl
                row.calculated_atl = previous_atl
                row.anchored = True
                row.provenance = MetricProvenance.ANCHORED.value
                row.set_load(ctl, atl)
            await self._commit(user_id, day, None)

            self.logger.info(
                "PMC anchor written",
                user_id=user_id,
                day=day.isoformat(),
                ctl=ctl,
                atl=atl,
                previous_ctl=previous_ctl,
                previous_atl=previous_atl,
            )

            following = day + timedelta(days=1)
            end = max(self.today(), following)
            recompute = await self._recompute(user_id, following, end, cancel)

        return AnchorResult(day, ctl, atl, previous_ctl, previous_atl, recompute)

    async def clear_anchor(self, user_id: str, day: date) -> RecomputeResult | None:
        """Unpin ``day`` and recompute from it."""
        async with self.locks.acquire(recompute_pass_key(user_id)):
            row = await self.get_day(user_id, day)
            if row is None or not row.anchored:
                return None
            row.anchored = False
            row.provenance = MetricProvenance.CALCULATED.value
            await self._commit(user_id, day, None)
            return await self._recompute(user_id, day, None, None)

    # ------------------------------------------------------------------
    # Roll-forward
    # ------------------------------------------------------------------

    async def pending_recompute_from(self, user_id: str) -> date | None:
        """Earliest day owed a recompute by an unfinished ingestion batch."""
        stmt = (
            select(IngestLog.recompute_from)
            .where(
                IngestLog.user_id == user_id,
                IngestLog.recompute_from.is_not(None),
                IngestLog.pmc_recomputed.is_(False),
            )
            .order_by(IngestLog.recompute_from)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def roll_forward(
        self, user_id: str, cancel: CancelToken | None = None
    ) -> RecomputeResult | None:
        """Extend metrics through today and settle pending recomputes.

        Returns:
            The recompute that ran, or None if the chart was already current
        """
        today = self.today()
        latest = await self.latest(user_id)
        candidates = []
        if latest is None:
            earliest = await self.aggregator.earliest_activity_date(user_id)
            if earliest is not None:
                candidates.append(earliest)
        elif latest.date < today:
            candidates.append(latest.date + timedelta(days=1))

        pending = await self.pending_recompute_from(user_id)
        if pending is not None:
            candidates.append(pending)
        if not candidates:
            return None

        result = await self.recompute_from(user_id, min(candidates), today, cancel)
        if pending is not None and not result.cancelled:
            await self._settle_pending(user_id)
        return result

    async def _settle_pending(self, user_id: str) -> None:
        stmt = select(IngestLog).where(
            IngestLog.user_id == user_id,
            IngestLog.recompute_from.is_not(None),
            IngestLog.pmc_recomputed.is_(False),
        )
        result = await self.session.execute(stmt)
        for log in result.scalars().all():
            log.mark_recompute_complete()
        await self.session.commit()
