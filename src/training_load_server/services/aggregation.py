"""Daily stress aggregation.

Groups canonical workout records by calendar day and sums their stress.
The output is gap-filled: every day in the requested range is present,
with zero stress on rest days.
"""

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from training_load_server.core.dates import date_range
from training_load_server.models.workout import WorkoutRecord

logger = structlog.get_logger()


@dataclass(frozen=True)
class DailyStress:
    """Stress total for one calendar day."""

    day: date
    total_stress: float
    workout_count: int = 0
    by_category: dict[str, float] = field(default_factory=dict)


def aggregate_daily_stress(
    records: Iterable[WorkoutRecord], start: date, end: date
) -> list[DailyStress]:
    """Sum stress per calendar day between ``start`` and ``end`` inclusive.

    Records outside the range are ignored. A non-finite stress value is
    passed through in the day's total so that the PMC can treat that day
    as failed rather than silently dropping the workout.
    """
    totals: dict[date, float] = defaultdict(float)
    counts: dict[date, int] = defaultdict(int)
    per_category: dict[date, dict[str, float]] = defaultdict(lambda: defaultdict(float))

    for record in records:
        day = record.activity_date
        if day < start or day > end:
            continue
        stress = record.stress or 0.0
        totals[day] += stress
        counts[day] += 1
        per_category[day][record.category] += stress

    return [
        DailyStress(
            day=day,
            total_stress=totals.get(day, 0.0),
            workout_count=counts.get(day, 0),
            by_category=dict(sorted(per_category[day].items())) if day in per_category else {},
        )
        for day in date_range(start, end)
    ]


class DailyAggregator:
    """Store-backed daily stress queries for one session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.logger = logger.bind(service="aggregation")

    async def load_records(self, user_id: str, start: date, end: date) -> list[WorkoutRecord]:
        """Records for ``user_id`` whose calendar day falls in [start, end]."""
        stmt = (
            select(WorkoutRecord)
            .where(
                WorkoutRecord.user_id == user_id,
                WorkoutRecord.activity_date >= start,
                WorkoutRecord.activity_date <= end,
            )
            .order_by(WorkoutRecord.activity_date, WorkoutRecord.start_date, WorkoutRecord.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def daily_stress(self, user_id: str, start: date, end: date) -> list[DailyStress]:
        """Gap-filled daily stress totals for ``user_id``."""
        if end < start:
            return []
        records = await self.load_records(user_id, start, end)
        return aggregate_daily_stress(records, start, end)

    async def category_stress(self, user_id: str, start: date, end: date) -> dict[str, float]:
        """Total stress per category over [start, end]; categories with none are omitted."""
        totals: dict[str, float] = defaultdict(float)
        for day in await self.daily_stress(user_id, start, end):
            for category, stress in day.by_category.items():
                totals[category] += stress
        return {category: total for category, total in sorted(totals.items()) if total > 0}

    async def earliest_activity_date(self, user_id: str) -> date | None:
        stmt = (
            select(WorkoutRecord.activity_date)
            .where(WorkoutRecord.user_id == user_id)
            .order_by(WorkoutRecord.activity_date)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def window_before(self, user_id: str, day: date, days: int) -> dict[str, float]:
        """Category stress over the ``days`` days up to and including ``day``."""
        return await self.category_stress(user_id, day - timedelta(days=days - 1), day)
