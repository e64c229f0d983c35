"""Performance Management Chart calculator.

Pure arithmetic, no storage. Fitness (CTL) and fatigue (ATL) are
exponentially weighted averages of daily stress:

    ctl[d] = ctl[d-1] + (stress[d] - ctl[d-1]) * (1 - e^(-1/42))
    atl[d] = atl[d-1] + (stress[d] - atl[d-1]) * (1 - e^(-1/7))
    tsb[d] = ctl[d] - atl[d]

Days are processed strictly in date order from the anchor (or from zero
load). Missing days count as zero stress and still decay the averages.
A day whose stress is not a finite number keeps the previous day's values.
"""

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum

import structlog

from training_load_server.models.daily_metrics import MetricProvenance
from training_load_server.services.aggregation import DailyStress

logger = structlog.get_logger()


class RiskZone(str, Enum):
    """Acute:chronic workload ratio bands."""

    UNDERTRAINED = "undertrained"
    OPTIMAL = "optimal"
    CAUTION = "caution"
    HIGH_RISK = "high_risk"


class FormStatus(str, Enum):
    """Training stress balance bands."""

    FRESH = "fresh"
    NEUTRAL = "neutral"
    TIRED = "tired"
    OVERREACHED = "overreached"


def risk_zone(ratio: float | None) -> RiskZone | None:
    """Classify an ATL/CTL ratio; None when there is no chronic load yet."""
    if ratio is None:
        return None
    if ratio < 0.8:
        return RiskZone.UNDERTRAINED
    if ratio <= 1.3:
        return RiskZone.OPTIMAL
    if ratio <= 1.5:
        return RiskZone.CAUTION
    return RiskZone.HIGH_RISK


def form_status(tsb: float) -> FormStatus:
    if tsb > 5:
        return FormStatus.FRESH
    if tsb >= -10:
        return FormStatus.NEUTRAL
    if tsb >= -30:
        return FormStatus.TIRED
    return FormStatus.OVERREACHED


def monotony(daily_stress: Sequence[float]) -> float | None:
    """Mean over standard deviation of the last seven days of stress.

    None with fewer than seven days, no training, or a perfectly even week.
    """
    if len(daily_stress) < 7:
        return None
    week = list(daily_stress[-7:])
    mean = sum(week) / 7
    if mean <= 0:
        return None
    deviation = math.sqrt(sum((stress - mean) ** 2 for stress in week) / 7)
    if deviation == 0:
        return None
    return mean / deviation


def strain(daily_stress: Sequence[float]) -> float | None:
    """Weekly stress total times monotony."""
    value = monotony(daily_stress)
    if value is None:
        return None
    return sum(daily_stress[-7:]) * value


@dataclass(frozen=True)
class Anchor:
    """A day whose CTL/ATL are taken as given."""

    day: date
    ctl: float
    atl: float


@dataclass(frozen=True)
class PMCPoint:
    """Computed load for one day."""

    day: date
    total_stress: float
    ctl: float
    atl: float
    provenance: MetricProvenance = MetricProvenance.CALCULATED

    @property
    def tsb(self) -> float:
        return self.ctl - self.atl

    @property
    def anchored(self) -> bool:
        return self.provenance == MetricProvenance.ANCHORED

    @property
    def acute_chronic_ratio(self) -> float | None:
        if self.ctl <= 0:
            return None
        return self.atl / self.ctl

    @property
    def risk_zone(self) -> RiskZone | None:
        return risk_zone(self.acute_chronic_ratio)

    @property
    def form(self) -> FormStatus:
        return form_status(self.tsb)


StressInput = Iterable[DailyStress] | Iterable[tuple[date, float]]


def _stress_by_day(daily_stress: StressInput) -> dict[date, float]:
    totals: dict[date, float] = {}
    for item in daily_stress:
        if isinstance(item, DailyStress):
            day, stress = item.day, item.total_stress
        else:
            day, stress = item
        totals[day] = totals.get(day, 0.0) + stress
    return totals


class PMCCalculator:
    """CTL/ATL/TSB recompute over a daily stress sequence."""

    def __init__(self, ctl_time_constant: int = 42, atl_time_constant: int = 7) -> None:
        if ctl_time_constant <= 0 or atl_time_constant <= 0:
            raise ValueError("Time constants must be positive")
        self.ctl_time_constant = ctl_time_constant
        self.atl_time_constant = atl_time_constant
        self.ctl_factor = 1 - math.exp(-1 / ctl_time_constant)
        self.atl_factor = 1 - math.exp(-1 / atl_time_constant)
        self.logger = logger.bind(service="pmc_calculator")

    def step(self, ctl: float, atl: float, stress: float) -> tuple[float, float]:
        """Advance CTL/ATL by one day of ``stress``."""
        return (
            ctl + (stress - ctl) * self.ctl_factor,
            atl + (stress - atl) * self.atl_factor,
        )

    def advance(self, previous: PMCPoint | Anchor | None, day: date, stress: float) -> PMCPoint:
        """Compute ``day`` from the previous day's values.

        A non-finite ``stress`` keeps the previous values for this day only.
        """
        ctl, atl = (previous.ctl, previous.atl) if previous is not None else (0.0, 0.0)
        if not math.isfinite(stress):
            self.logger.error(
                "Non-finite daily stress, carrying previous load forward",
                day=day.isoformat(),
                stress=repr(stress),
            )
            return PMCPoint(day, 0.0, ctl, atl, MetricProvenance.CARRIED_FORWARD)
        ctl, atl = self.step(ctl, atl, stress)
        return PMCPoint(day, stress, ctl, atl)

    def recompute(
        self,
        daily_stress: StressInput,
        anchor: Anchor | None = None,
        end: date | None = None,
        pinned: Mapping[date, Anchor] | None = None,
    ) -> list[PMCPoint]:
        """Recompute the chart.

        Args:
            daily_stress: (date, total stress) pairs or DailyStress values, any
                order; gaps are filled with zero stress
            anchor: Seed day. The result starts with the anchor itself and
                only later days are computed; input before it is ignored.
                Without an anchor, computation starts from zero load on the
                earliest input day.
            end: Last day to produce (defaults to the last input day)
            pinned: Further anchored days met along the way; each re-seeds
                the computation with its own values

        Returns:
            One point per day, in date order
        """
        stress = _stress_by_day(daily_stress)
        pinned = dict(pinned or {})

        if anchor is not None:
            first = anchor.day
        elif stress:
            first = min(stress)
        else:
            return []

        if end is not None:
            last = max(first, end)
        else:
            last = max([first, *(day for day in stress if day >= first)])

        points: list[PMCPoint] = []
        previous: PMCPoint | None = None
        day = first
        while day <= last:
            seed = anchor if (anchor is not None and day == anchor.day) else pinned.get(day)
            if seed is not None:
                previous = PMCPoint(
                    day, stress.get(day, 0.0), seed.ctl, seed.atl, MetricProvenance.ANCHORED
                )
            else:
                previous = self.advance(previous, day, stress.get(day, 0.0))
            points.append(previous)
            day += timedelta(days=1)
        return points

    def project(
        self, last: PMCPoint, planned_stress: Sequence[float], days: int | None = None
    ) -> list[PMCPoint]:
        """Project forward from ``last``.

        ``planned_stress`` gives the stress for each following day; days beyond
        it are rest days. ``days`` defaults to ``len(planned_stress)``.
        """
        horizon = len(planned_stress) if days is None else days
        points = []
        previous = last
        for offset in range(horizon):
            stress = planned_stress[offset] if offset < len(planned_stress) else 0.0
            previous = self.advance(previous, last.day + timedelta(days=offset + 1), stress)
            points.append(previous)
        return points

    def days_until_form(self, last: PMCPoint, target_tsb: float, max_days: int = 60) -> int | None:
        """Rest days needed for TSB to reach ``target_tsb``; None if not within ``max_days``."""
        if last.tsb >= target_tsb:
            return 0
        for index, point in enumerate(self.project(last, [], max_days), start=1):
            if point.tsb >= target_tsb:
                return index
        return None

    def stress_to_reach_tsb(self, last: PMCPoint, target_tsb: float, days: int) -> float | None:
        """Constant daily stress that lands TSB on ``target_tsb`` after ``days`` days.

        With ``a`` and ``b`` the CTL and ATL retention per day, ``n`` days of
        stress ``s`` give ``tsb = ctl*a^n - atl*b^n + s*(b^n - a^n)``.

        Returns:
            None if the target is above what ``days`` rest days reach
        """
        if days < 1:
            raise ValueError("days must be at least 1")
        ctl_keep = (1 - self.ctl_factor) ** days
        atl_keep = (1 - self.atl_factor) ** days
        rest_tsb = last.ctl * ctl_keep - last.atl * atl_keep
        if target_tsb > rest_tsb:
            return None
        return (target_tsb - rest_tsb) / (atl_keep - ctl_keep)
