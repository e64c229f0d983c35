"""Stress-score calibration and learning.

Learns, per activity category, how far the calculated stress score sits
from the athlete's ground truth. Two kinds of evidence feed it:

- Direct comparisons: the athlete confirms a workout's stress score (full
  confidence, ratio 1) or corrects it (ratio ground_truth / calculated).
- PMC drift: the athlete overrides CTL/ATL for a day. The override divided
  by what the model had produced is blamed on the categories trained in the
  preceding window, weighted by each category's share of that stress.

Update rule (one data point, weight ``w`` = confidence * 0.5^(age_days / half_life)):

    tolerance  = max(2 * sqrt(variance), min_tolerance)
    residual   = ratio - scale_factor
    agreement  = 1 inside tolerance, falling linearly to 0 at 2x tolerance
    scale     += clip(residual, ±tolerance) * w / (W + w)
    variance   = (W * variance + w * residual²) / (W + w)
    confidence += (1 - confidence) * learning_rate * w * agreement

A contradictory point moves the estimate by at most one tolerance step but
inflates the variance, which widens the reported interval. Confidence
never decreases while points are appended. A point's age is measured when
it is folded in; a rebuild replays the valid points in recording order and
re-weights each one by its age at rebuild time.

Every point also feeds a user-wide profile stored under the ``"all"``
category. A category that has not yet earned its own factor falls back to
the user-wide one.
"""

import math
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from training_load_server.core.clock import Clock, utc_now
from training_load_server.core.config import Settings, settings as default_settings
from training_load_server.core.dates import ensure_aware
from training_load_server.core.validation import (
    CONFIDENCE_RANGE,
    InvalidCorrectionError,
    ValueRange,
    validate_value,
)
from training_load_server.models.calibration import (
    CalibrationDataPoint,
    CalibrationSignal,
    ScalingProfile,
)
from training_load_server.models.workout import ActivityCategory

logger = structlog.get_logger()

# Implied PMC drift ratios outside this band are treated as user error
DRIFT_RATIO_RANGE = ValueRange(0.25, 4.0)
NON_NEGATIVE = ValueRange(0, math.inf)

# Category under which the user-wide profile is stored
GLOBAL_CATEGORY = "all"


@dataclass(frozen=True)
class ProfileState:
    """Running calibration state for one category."""

    scale_factor: float = 1.0
    bias: float = 0.0
    confidence: float = 0.0
    sample_count: int = 0
    weight_sum: float = 0.0
    variance: float = 0.0
    complete: bool = False

    @property
    def interval_width(self) -> float | None:
        """Half-width of the ~95% interval around ``scale_factor``."""
        if self.sample_count == 0:
            return None
        return 1.96 * math.sqrt(self.variance / self.sample_count)

    @classmethod
    def from_profile(cls, profile: ScalingProfile) -> "ProfileState":
        return cls(
            scale_factor=profile.scale_factor,
            bias=profile.bias,
            confidence=profile.confidence,
            sample_count=profile.sample_count,
            weight_sum=profile.weight_sum,
            variance=profile.ratio_variance,
            complete=profile.calibration_complete,
        )


class CalibrationRule:
    """Pure update of a ProfileState by one comparison."""

    def __init__(self, config: Settings | None = None) -> None:
        config = config or default_settings
        self.learning_rate = config.calibration_learning_rate
        self.min_tolerance = config.calibration_min_tolerance
        self.min_samples = config.calibration_min_samples
        self.complete_confidence = config.calibration_complete_confidence
        self.half_life_days = config.calibration_half_life_days

    def apply(
        self, state: ProfileState, ratio: float, weight: float, difference: float
    ) -> ProfileState:
        """Fold one (ratio, weight) observation into ``state``.

        Args:
            state: Current state
            ratio: ground_truth / calculated
            weight: Learning weight in [0, 1]
            difference: ground_truth - calculated, for the additive bias
        """
        if weight <= 0:
            return state

        total = state.weight_sum + weight
        if state.sample_count == 0 or state.weight_sum <= 0:
            scale = ratio
            variance = 0.0
            agreement = 1.0
            bias = difference
        else:
            tolerance = max(2 * math.sqrt(state.variance), self.min_tolerance)
            residual = ratio - state.scale_factor
            excess = abs(residual) - tolerance
            agreement = 1.0 if excess <= 0 else max(0.0, 1.0 - excess / tolerance)
            clipped = max(-tolerance, min(tolerance, residual))
            scale = state.scale_factor + clipped * weight / total
            variance = (state.weight_sum * state.variance + weight * residual**2) / total
            bias = (state.weight_sum * state.bias + weight * difference) / total

        gain = (1 - state.confidence) * self.learning_rate * weight * agreement
        confidence = state.confidence + gain
        count = state.sample_count + 1
        complete = state.complete or (
            count >= self.min_samples and confidence >= self.complete_confidence
        )
        return ProfileState(
            scale_factor=scale,
            bias=bias,
            confidence=min(1.0, confidence),
            sample_count=count,
            weight_sum=total,
            variance=variance,
            complete=complete,
        )

    def time_weight(self, timestamp: datetime, now: datetime) -> float:
        """Recency weight: 1 for a fresh point, halving every ``half_life_days``."""
        age = ensure_aware(now) - ensure_aware(timestamp)
        if age <= timedelta(0):
            return 1.0
        return 0.5 ** (age / timedelta(days=self.half_life_days))

    def learning_weight(self, point: CalibrationDataPoint, now: datetime) -> float:
        return point.confidence * self.time_weight(point.timestamp, now)

    def fold(
        self, state: ProfileState, point: CalibrationDataPoint, now: datetime
    ) -> ProfileState:
        """Apply one point at its learning weight; unusable points leave ``state`` as is."""
        if not point.is_usable:
            return state
        return self.apply(
            state,
            point.ratio,
            self.learning_weight(point, now),
            point.ground_truth - point.calculated,
        )

    def replay(self, points: list[CalibrationDataPoint], now: datetime) -> ProfileState:
        """Rebuild state from usable points in recording order, weighted by age at ``now``."""
        state = ProfileState()
        for point in sorted(points, key=lambda p: p.id):
            state = self.fold(state, point, now)
        return state


@dataclass(frozen=True)
class ProfileSnapshot:
    """Read-only view of a category's scaling profile."""

    category: str
    scale_factor: float
    applied_factor: float
    bias: float
    confidence: float
    sample_count: int
    interval_width: float | None
    calibration_complete: bool
    learning_enabled: bool
    factor_source: str = "own"

    @property
    def needs_ground_truth(self) -> bool:
        return not self.calibration_complete

    def to_dict(self) -> dict[str, object]:
        return {
            "category": self.category,
            "scaleFactor": self.scale_factor,
            "appliedFactor": self.applied_factor,
            "bias": self.bias,
            "confidence": self.confidence,
            "sampleCount": self.sample_count,
            "intervalWidth": self.interval_width,
            "calibrationComplete": self.calibration_complete,
            "learningEnabled": self.learning_enabled,
            "factorSource": self.factor_source,
            "needsGroundTruth": self.needs_ground_truth,
        }


class CalibrationEngine:
    """Records comparisons and maintains per-category scaling profiles."""

    def __init__(
        self,
        session: AsyncSession,
        config: Settings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.session = session
        self.config = config or default_settings
        self.clock = clock
        self.rule = CalibrationRule(self.config)
        self.logger = logger.bind(service="calibration")

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record(self, point: CalibrationDataPoint) -> ProfileSnapshot:
        """Store ``point`` and fold it into its category's profile.

        Recording the same ``event_key`` twice is a no-op. Points for a
        category whose learning is disabled are not stored.

        Raises:
            InvalidCorrectionError: If the point's numbers are unusable
        """
        self._validate_point(point)
        profile = await self._get_or_create_profile(point.user_id, point.category)

        existing = await self._find_event(point.user_id, point.event_key)
        if existing is not None:
            self.logger.debug("Calibration event already recorded", event_key=point.event_key)
            return await self._view(profile)

        if not profile.learning_enabled:
            self.logger.info(
                "Calibration learning disabled, comparison ignored",
                user_id=point.user_id,
                category=point.category,
            )
            return await self._view(profile)

        self.session.add(point)
        await self.session.flush()

        now = self.clock()
        before = ProfileState.from_profile(profile)
        after = self.rule.fold(before, point, now)
        self._store_state(profile, after, point.id)
        if point.is_usable:
            overall = await self._get_or_create_profile(point.user_id, GLOBAL_CATEGORY)
            overall_state = self.rule.fold(ProfileState.from_profile(overall), point, now)
            self._store_state(overall, overall_state, point.id)
        await self.session.commit()

        self.logger.info(
            "Scaling profile updated",
            user_id=point.user_id,
            category=point.category,
            signal=point.signal,
            ratio=round(point.ratio, 4) if point.ratio is not None else None,
            scale_factor=round(after.scale_factor, 4),
            confidence=round(after.confidence, 4),
            samples=after.sample_count,
            complete=after.complete,
        )
        if after.complete and not before.complete:
            self.logger.info(
                "Calibration complete", user_id=point.user_id, category=point.category
            )
        return await self._view(profile)

    async def record_comparison(
        self,
        user_id: str,
        category: ActivityCategory | str,
        calculated: float,
        ground_truth: float,
        confidence: float = 1.0,
        workout_id: str | None = None,
        timestamp: datetime | None = None,
        event_key: str | None = None,
    ) -> ProfileSnapshot:
        """Record a direct (calculated, ground truth) comparison."""
        category = ActivityCategory(category).value
        signal = (
            CalibrationSignal.CONFIRMED
            if math.isclose(calculated, ground_truth)
            else CalibrationSignal.CORRECTED
        )
        timestamp = timestamp or self.clock()
        if event_key is None:
            subject = workout_id or timestamp.isoformat()
            event_key = f"{signal.value}:{subject}:{calculated:.3f}:{ground_truth:.3f}"
        point = CalibrationDataPoint(
            user_id=user_id,
            event_key=event_key,
            timestamp=timestamp,
            category=category,
            signal=signal.value,
            calculated=calculated,
            ground_truth=ground_truth,
            confidence=confidence,
            workout_id=workout_id,
            is_valid=True,
        )
        return await self.record(point)

    async def record_pmc_drift(
        self,
        user_id: str,
        anchor_day: date,
        ctl: float,
        atl: float,
        previous_ctl: float | None,
        previous_atl: float | None,
        category_stress: dict[str, float],
    ) -> list[ProfileSnapshot]:
        """Turn a CTL/ATL override into indirect evidence per category.

        Args:
            user_id: Athlete
            anchor_day: Day that was anchored
            ctl, atl: Values the athlete entered
            previous_ctl, previous_atl: Values the model had computed
            category_stress: Stress per category in the window before the anchor

        Returns:
            Updated snapshots for the categories that received evidence
        """
        ratio = self._drift_ratio(ctl, atl, previous_ctl, previous_atl)
        if ratio is None:
            return []

        total = sum(stress for stress in category_stress.values() if stress > 0)
        if total <= 0:
            self.logger.info(
                "PMC drift ignored, no training before anchor",
                user_id=user_id,
                anchor_day=anchor_day.isoformat(),
            )
            return []

        snapshots = []
        timestamp = self.clock()
        for category, stress in sorted(category_stress.items()):
            if stress <= 0:
                continue
            point = CalibrationDataPoint(
                user_id=user_id,
                event_key=f"pmc_drift:{anchor_day.isoformat()}:{category}:{ctl:.3f}:{atl:.3f}",
                timestamp=timestamp,
                category=category,
                signal=CalibrationSignal.PMC_DRIFT.value,
                calculated=stress,
                ground_truth=stress * ratio,
                confidence=self.config.calibration_drift_confidence * stress / total,
                pmc_ctl_delta=None if previous_ctl is None else ctl - previous_ctl,
                pmc_atl_delta=None if previous_atl is None else atl - previous_atl,
                anchor_date=anchor_day,
                is_valid=True,
            )
            snapshots.append(await self.record(point))
        return snapshots

    def _drift_ratio(
        self,
        ctl: float,
        atl: float,
        previous_ctl: float | None,
        previous_atl: float | None,
    ) -> float | None:
        weighted = []
        if previous_ctl is not None and previous_ctl > 0:
            weighted.append((ctl / previous_ctl, 2.0))
        if previous_atl is not None and previous_atl > 0:
            weighted.append((atl / previous_atl, 1.0))
        if not weighted:
            return None
        ratio = sum(r * w for r, w in weighted) / sum(w for _, w in weighted)
        if not math.isfinite(ratio) or not DRIFT_RATIO_RANGE.contains(ratio):
            self.logger.warning("Implausible PMC drift ratio ignored", ratio=ratio)
            return None
        return ratio

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def scaling_profile(
        self, user_id: str, category: ActivityCategory | str
    ) -> ProfileSnapshot:
        """Current profile for ``category`` (defaults if nothing recorded yet).

        Until the category has earned its own factor, ``applied_factor``
        comes from the user-wide profile when that one qualifies.
        """
        category = ActivityCategory(category).value
        profile = await self._get_profile(user_id, category)
        if profile is None:
            fallback = await self._global_state(user_id)
            return self._snapshot_state(
                category, ProfileState(), learning_enabled=True, fallback=fallback
            )
        return await self._view(profile)

    async def global_profile(self, user_id: str) -> ProfileSnapshot:
        """User-wide profile built from every category's points."""
        profile = await self._get_profile(user_id, GLOBAL_CATEGORY)
        if profile is None:
            return self._snapshot_state(GLOBAL_CATEGORY, ProfileState(), learning_enabled=True)
        return self._snapshot(profile)

    async def profiles(self, user_id: str) -> list[ProfileSnapshot]:
        """Profiles for every category, in category order."""
        return [await self.scaling_profile(user_id, category) for category in ActivityCategory]

    async def applicable_scale_factor(
        self, user_id: str, category: ActivityCategory | str
    ) -> float:
        return (await self.scaling_profile(user_id, category)).applied_factor

    async def needs_ground_truth(self, user_id: str, category: ActivityCategory | str) -> bool:
        return (await self.scaling_profile(user_id, category)).needs_ground_truth

    async def set_learning_enabled(
        self, user_id: str, category: ActivityCategory | str, enabled: bool
    ) -> ProfileSnapshot:
        profile = await self._get_or_create_profile(user_id, ActivityCategory(category).value)
        profile.learning_enabled = enabled
        await self.session.commit()
        return await self._view(profile)

    async def invalidate_data_point(self, user_id: str, point_id: int) -> ProfileSnapshot | None:
        """Mark a point invalid and rebuild its category from the remaining points."""
        point = await self.session.get(CalibrationDataPoint, point_id)
        if point is None or point.user_id != user_id:
            return None
        point.is_valid = False
        await self.session.flush()
        return await self.rebuild_profile(user_id, point.category)

    async def rebuild_profile(
        self, user_id: str, category: ActivityCategory | str
    ) -> ProfileSnapshot:
        """Recompute a profile by replaying its valid points in recording order.

        The user-wide profile is rebuilt along with it.
        """
        category = ActivityCategory(category).value
        profile = await self._rebuild(user_id, category)
        await self._rebuild(user_id, GLOBAL_CATEGORY)
        await self.session.commit()
        return await self._view(profile)

    async def reset_profile(
        self, user_id: str, category: ActivityCategory | str
    ) -> ProfileSnapshot:
        """Invalidate every point for ``category`` and start over."""
        category = ActivityCategory(category).value
        for point in await self.data_points(user_id, category):
            point.is_valid = False
        profile = await self._get_or_create_profile(user_id, category)
        self._store_state(profile, ProfileState(), None, rebuilt=True)
        await self._rebuild(user_id, GLOBAL_CATEGORY)
        await self.session.commit()
        self.logger.info("Scaling profile reset", user_id=user_id, category=category)
        return await self._view(profile)

    async def data_points(
        self, user_id: str, category: str | None = None
    ) -> list[CalibrationDataPoint]:
        """Points for one category, or for every category when ``category`` is None."""
        stmt = select(CalibrationDataPoint).where(CalibrationDataPoint.user_id == user_id)
        if category is not None:
            stmt = stmt.where(CalibrationDataPoint.category == category)
        result = await self.session.execute(stmt.order_by(CalibrationDataPoint.id))
        return list(result.scalars().all())

    async def _rebuild(self, user_id: str, category: str) -> ScalingProfile:
        scope = None if category == GLOBAL_CATEGORY else category
        points = await self.data_points(user_id, scope)
        state = self.rule.replay(points, self.clock())
        profile = await self._get_or_create_profile(user_id, category)
        self._store_state(profile, state, points[-1].id if points else None, rebuilt=True)
        self.logger.info(
            "Scaling profile rebuilt",
            user_id=user_id,
            category=category,
            samples=state.sample_count,
        )
        return profile

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate_point(self, point: CalibrationDataPoint) -> None:
        ActivityCategory(point.category)
        validate_value("calculated", point.calculated, NON_NEGATIVE)
        validate_value("ground_truth", point.ground_truth, NON_NEGATIVE)
        validate_value("confidence", point.confidence, CONFIDENCE_RANGE)
        if not point.event_key:
            raise InvalidCorrectionError("event_key", 0, reason="event key is required")

    async def _find_event(self, user_id: str, event_key: str) -> CalibrationDataPoint | None:
        stmt = select(CalibrationDataPoint).where(
            CalibrationDataPoint.user_id == user_id,
            CalibrationDataPoint.event_key == event_key,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_profile(self, user_id: str, category: str) -> ScalingProfile | None:
        stmt = select(ScalingProfile).where(
            ScalingProfile.user_id == user_id,
            ScalingProfile.category == category,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_or_create_profile(self, user_id: str, category: str) -> ScalingProfile:
        profile = await self._get_profile(user_id, category)
        if profile is None:
            profile = ScalingProfile(
                user_id=user_id,
                category=category,
                scale_factor=1.0,
                bias=0.0,
                confidence=0.0,
                sample_count=0,
                weight_sum=0.0,
                ratio_variance=0.0,
                calibration_complete=False,
                learning_enabled=True,
            )
            self.session.add(profile)
            await self.session.flush()
        return profile

    def _store_state(
        self,
        profile: ScalingProfile,
        state: ProfileState,
        last_point_id: int | None,
        rebuilt: bool = False,
    ) -> None:
        if not rebuilt:
            # Appending evidence never lowers confidence
            state = replace(state, confidence=max(state.confidence, profile.confidence))
        now = self.clock()
        profile.scale_factor = state.scale_factor
        profile.bias = state.bias
        profile.confidence = state.confidence
        profile.sample_count = state.sample_count
        profile.weight_sum = state.weight_sum
        profile.ratio_variance = state.variance
        profile.interval_width = state.interval_width
        if state.complete and not profile.calibration_complete:
            profile.completed_at = now
        if not state.complete:
            profile.completed_at = None
        profile.calibration_complete = state.complete
        profile.last_point_id = last_point_id
        profile.recalculated_at = now

    def _qualifies(self, state: ProfileState) -> bool:
        return (
            state.sample_count >= self.config.calibration_apply_min_samples
            and state.confidence >= self.config.calibration_apply_min_confidence
        )

    def _clamp(self, scale_factor: float) -> float:
        return max(
            self.config.calibration_min_scale_factor,
            min(self.config.calibration_max_scale_factor, scale_factor),
        )

    def _applied_factor(
        self, state: ProfileState, fallback: ProfileState | None = None
    ) -> tuple[float, str]:
        """Factor to apply and where it came from: ``own``, ``global`` or ``default``."""
        if self._qualifies(state):
            return self._clamp(state.scale_factor), "own"
        if fallback is not None and self._qualifies(fallback):
            return self._clamp(fallback.scale_factor), "global"
        return 1.0, "default"

    def _snapshot_state(
        self,
        category: str,
        state: ProfileState,
        learning_enabled: bool,
        fallback: ProfileState | None = None,
    ) -> ProfileSnapshot:
        applied, source = self._applied_factor(state, fallback)
        return ProfileSnapshot(
            category=category,
            scale_factor=state.scale_factor,
            applied_factor=applied,
            bias=state.bias,
            confidence=state.confidence,
            sample_count=state.sample_count,
            interval_width=state.interval_width,
            calibration_complete=state.complete,
            learning_enabled=learning_enabled,
            factor_source=source,
        )

    def _snapshot(
        self, profile: ScalingProfile, fallback: ProfileState | None = None
    ) -> ProfileSnapshot:
        return self._snapshot_state(
            profile.category,
            ProfileState.from_profile(profile),
            profile.learning_enabled,
            fallback,
        )

    async def _global_state(self, user_id: str) -> ProfileState | None:
        profile = await self._get_profile(user_id, GLOBAL_CATEGORY)
        return ProfileState.from_profile(profile) if profile is not None else None

    async def _view(self, profile: ScalingProfile) -> ProfileSnapshot:
        """Snapshot of a category profile with the user-wide fallback resolved."""
        return self._snapshot(profile, await self._global_state(profile.user_id))
