"""Tests for the Performance Management Chart calculator."""

import math
from datetime import date, timedelta

import pytest

from training_load_server.models.daily_metrics import MetricProvenance
from training_load_server.services.aggregation import DailyStress
from training_load_server.services.pmc import (
    Anchor,
    FormStatus,
    PMCCalculator,
    PMCPoint,
    RiskZone,
    form_status,
    monotony,
    risk_zone,
    strain,
)

DAY_1 = date(2024, 6, 1)
WEEK = [50.0, 0.0, 80.0, 0.0, 0.0, 0.0, 0.0]


def days(values: list[float], start: date = DAY_1) -> list[tuple[date, float]]:
    return [(start + timedelta(days=offset), value) for offset, value in enumerate(values)]


@pytest.fixture
def calculator() -> PMCCalculator:
    return PMCCalculator(42, 7)


class TestRecompute:
    """Recompute from zero load or an anchor."""

    def test_week_from_zero_load(self, calculator: PMCCalculator):
        """Day 7 of [50, 0, 80, 0, 0, 0, 0] follows the exponential formulas."""
        k_ctl = 1 - math.exp(-1 / 42)
        k_atl = 1 - math.exp(-1 / 7)
        ctl = atl = 0.0
        for stress in WEEK:
            ctl += (stress - ctl) * k_ctl
            atl += (stress - atl) * k_atl

        points = calculator.recompute(days(WEEK))

        assert len(points) == 7
        last = points[-1]
        assert last.day == DAY_1 + timedelta(days=6)
        assert last.ctl == pytest.approx(ctl)
        assert last.atl == pytest.approx(atl)
        assert last.ctl == pytest.approx(2.731, abs=1e-3)
        assert last.atl == pytest.approx(8.839, abs=1e-3)
        assert last.tsb == pytest.approx(-6.108, abs=1e-3)

    def test_tsb_is_always_ctl_minus_atl(self, calculator: PMCCalculator):
        for point in calculator.recompute(days([120, 0, 60, 200, 0, 30])):
            assert point.tsb == point.ctl - point.atl

    def test_recompute_is_idempotent(self, calculator: PMCCalculator):
        daily = days([70, 0, 0, 110, 40])

        assert calculator.recompute(daily) == calculator.recompute(daily)

    def test_missing_days_count_as_zero(self, calculator: PMCCalculator):
        """Gaps still decay the averages."""
        sparse = [(DAY_1, 50.0), (DAY_1 + timedelta(days=2), 80.0)]

        points = calculator.recompute(sparse, end=DAY_1 + timedelta(days=6))

        assert [point.day for point in points] == [
            DAY_1 + timedelta(days=offset) for offset in range(7)
        ]
        assert points[-1].ctl == pytest.approx(calculator.recompute(days(WEEK))[-1].ctl)

    def test_accepts_daily_stress_values_in_any_order(self, calculator: PMCCalculator):
        daily = [
            DailyStress(DAY_1 + timedelta(days=2), 80.0, 1),
            DailyStress(DAY_1, 50.0, 1),
        ]

        points = calculator.recompute(daily)

        assert [point.total_stress for point in points] == [50.0, 0.0, 80.0]

    def test_empty_input(self, calculator: PMCCalculator):
        assert calculator.recompute([]) == []

    def test_invalid_time_constant(self):
        with pytest.raises(ValueError):
            PMCCalculator(0, 7)


class TestNonFiniteStress:
    """A day whose stress is not a number keeps the previous load."""

    def test_nan_day_carries_previous_values_forward(self, calculator: PMCCalculator):
        points = calculator.recompute(days([100.0, float("nan"), 50.0]))

        assert points[1].provenance == MetricProvenance.CARRIED_FORWARD
        assert points[1].ctl == points[0].ctl
        assert points[1].atl == points[0].atl
        assert math.isfinite(points[2].ctl)
        assert points[2].provenance == MetricProvenance.CALCULATED

    def test_infinite_stress_does_not_poison_later_days(self, calculator: PMCCalculator):
        points = calculator.recompute(days([100.0, math.inf, 0.0, 0.0]))

        assert all(math.isfinite(point.ctl) and math.isfinite(point.atl) for point in points)


class TestAnchors:
    """Anchored days seed the computation."""

    def test_anchor_seeds_following_days(self, calculator: PMCCalculator):
        anchor = Anchor(DAY_1 + timedelta(days=2), ctl=40.0, atl=55.0)

        points = calculator.recompute(days(WEEK), anchor=anchor)

        assert points[0].day == anchor.day
        assert points[0].anchored
        assert (points[0].ctl, points[0].atl) == (40.0, 55.0)
        assert points[1].ctl == pytest.approx(40.0 * math.exp(-1 / 42))
        assert points[1].atl == pytest.approx(55.0 * math.exp(-1 / 7))

    def test_input_before_anchor_is_ignored(self, calculator: PMCCalculator):
        anchor = Anchor(DAY_1 + timedelta(days=3), ctl=10.0, atl=10.0)

        with_history = calculator.recompute(days([500.0, 500.0, 500.0, 0.0, 20.0]), anchor=anchor)
        without = calculator.recompute(days([0.0, 20.0], anchor.day), anchor=anchor)

        assert with_history == without

    def test_pinned_day_reseeds(self, calculator: PMCCalculator):
        pinned_day = DAY_1 + timedelta(days=4)
        pinned = {pinned_day: Anchor(pinned_day, 60.0, 20.0)}

        points = calculator.recompute(days(WEEK), pinned=pinned)

        assert points[4].anchored
        assert (points[4].ctl, points[4].atl) == (60.0, 20.0)
        assert points[5].ctl == pytest.approx(60.0 * math.exp(-1 / 42))


class TestProjection:
    """Forward projection and form helpers."""

    def test_rest_days_decay_towards_zero(self, calculator: PMCCalculator):
        last = PMCPoint(DAY_1, 0.0, 60.0, 80.0)

        projected = calculator.project(last, [], days=5)

        assert len(projected) == 5
        assert projected[0].day == DAY_1 + timedelta(days=1)
        assert all(b.ctl < a.ctl for a, b in zip(projected, projected[1:], strict=False))
        assert projected[-1].tsb > last.tsb

    def test_planned_stress_is_used_first(self, calculator: PMCCalculator):
        last = PMCPoint(DAY_1, 0.0, 50.0, 50.0)

        projected = calculator.project(last, [100.0, 100.0], days=3)

        assert projected[0].ctl > 50.0
        assert projected[2].total_stress == 0.0

    def test_days_until_form(self, calculator: PMCCalculator):
        last = PMCPoint(DAY_1, 0.0, 60.0, 80.0)

        needed = calculator.days_until_form(last, target_tsb=0.0)

        assert needed is not None and needed > 0
        assert calculator.project(last, [], needed)[-1].tsb >= 0.0
        assert calculator.project(last, [], needed - 1)[-1].tsb < 0.0

    def test_already_fresh_needs_no_rest(self, calculator: PMCCalculator):
        assert calculator.days_until_form(PMCPoint(DAY_1, 0.0, 60.0, 50.0), 5.0) == 0

    def test_stress_to_reach_tsb_lands_on_target(self, calculator: PMCCalculator):
        last = PMCPoint(DAY_1, 0.0, 60.0, 50.0)

        needed = calculator.stress_to_reach_tsb(last, target_tsb=-15.0, days=5)

        assert needed is not None and needed > 0
        assert calculator.project(last, [needed] * 5)[-1].tsb == pytest.approx(-15.0)

    def test_target_above_rest_is_unreachable(self, calculator: PMCCalculator):
        last = PMCPoint(DAY_1, 0.0, 60.0, 80.0)

        assert calculator.stress_to_reach_tsb(last, target_tsb=30.0, days=3) is None

    def test_stress_to_reach_tsb_needs_a_day(self, calculator: PMCCalculator):
        with pytest.raises(ValueError):
            calculator.stress_to_reach_tsb(PMCPoint(DAY_1, 0.0, 60.0, 50.0), 0.0, days=0)


class TestWeeklyLoad:
    """Monotony and strain over the last seven days."""

    def test_short_history_has_no_monotony(self):
        assert monotony([50.0] * 6) is None
        assert strain([50.0] * 6) is None

    def test_even_week_has_no_monotony(self):
        assert monotony([40.0] * 7) is None

    def test_rest_week_has_no_monotony(self):
        assert monotony([0.0] * 7) is None

    def test_monotony_and_strain_of_a_week(self):
        history = [500.0, *WEEK]
        mean = sum(WEEK) / 7
        deviation = math.sqrt(sum((value - mean) ** 2 for value in WEEK) / 7)

        assert monotony(history) == pytest.approx(mean / deviation)
        assert strain(history) == pytest.approx(sum(WEEK) * mean / deviation)


class TestBands:
    """Acute:chronic ratio and form classification."""

    @pytest.mark.parametrize(
        ("ratio", "zone"),
        [
            (0.5, RiskZone.UNDERTRAINED),
            (1.0, RiskZone.OPTIMAL),
            (1.4, RiskZone.CAUTION),
            (1.8, RiskZone.HIGH_RISK),
            (None, None),
        ],
    )
    def test_risk_zone(self, ratio, zone):
        assert risk_zone(ratio) == zone

    def test_no_chronic_load_has_no_ratio(self):
        assert PMCPoint(DAY_1, 0.0, 0.0, 10.0).acute_chronic_ratio is None

    @pytest.mark.parametrize(
        ("tsb", "status"),
        [
            (10.0, FormStatus.FRESH),
            (0.0, FormStatus.NEUTRAL),
            (-20.0, FormStatus.TIRED),
            (-40.0, FormStatus.OVERREACHED),
        ],
    )
    def test_form_status(self, tsb, status):
        assert form_status(tsb) == status
