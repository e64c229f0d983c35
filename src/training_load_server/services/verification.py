"""Ground-truth workflow: confirming, correcting and anchoring.

Every user-supplied number is validated before anything is written. A
confirmation or correction becomes a direct calibration comparison; an
anchor becomes PMC drift evidence for the categories trained before it.
"""

from dataclasses import dataclass, field
from datetime import date

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from training_load_server.core.clock import Clock, utc_now
from training_load_server.core.config import Settings, settings as default_settings
from training_load_server.core.locks import KeyedLockManager, lock_manager
from training_load_server.core.validation import validate_anchor, validate_stress
from training_load_server.models.workout import (
    StressScoreType,
    VerificationStatus,
    WorkoutRecord,
)
from training_load_server.services.aggregation import DailyAggregator
from training_load_server.services.calibration import CalibrationEngine, ProfileSnapshot
from training_load_server.services.metrics import AnchorResult, PMCService, RecomputeResult

logger = structlog.get_logger()


@dataclass(frozen=True)
class VerificationResult:
    """A workout after confirmation or correction."""

    workout: WorkoutRecord
    profile: ProfileSnapshot
    recompute: RecomputeResult | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "workout": self.workout.to_dict(),
            "profile": self.profile.to_dict(),
            "recompute": self.recompute.to_dict() if self.recompute else None,
        }


@dataclass(frozen=True)
class AnchorOutcome:
    """An anchor plus the calibration evidence derived from it."""

    anchor: AnchorResult
    window_stress: dict[str, float]
    profiles: list[ProfileSnapshot] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "date": self.anchor.day.isoformat(),
            "ctl": self.anchor.ctl,
            "atl": self.anchor.atl,
            "tsb": self.anchor.ctl - self.anchor.atl,
            "previousCtl": self.anchor.previous_ctl,
            "previousAtl": self.anchor.previous_atl,
            "recompute": self.anchor.recompute.to_dict(),
            "windowStress": dict(self.window_stress),
            "profiles": [profile.to_dict() for profile in self.profiles],
        }


class VerificationService:
    """Applies athlete-supplied ground truth to workouts and the PMC."""

    def __init__(
        self,
        session: AsyncSession,
        config: Settings | None = None,
        locks: KeyedLockManager | None = None,
        clock: Clock = utc_now,
        pmc: PMCService | None = None,
        calibration: CalibrationEngine | None = None,
    ) -> None:
        self.session = session
        self.config = config or default_settings
        self.pmc = pmc or PMCService(session, self.config, locks or lock_manager, clock)
        self.calibration = calibration or CalibrationEngine(session, self.config, clock)
        self.aggregator = DailyAggregator(session)
        self.logger = logger.bind(service="verification")

    async def get_workout(self, user_id: str, workout_id: str) -> WorkoutRecord | None:
        stmt = select(WorkoutRecord).where(
            WorkoutRecord.user_id == user_id, WorkoutRecord.id == workout_id
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def confirm(self, user_id: str, workout_id: str) -> VerificationResult | None:
        """Accept a workout's current stress score as correct.

        Returns:
            None if the workout does not exist
        """
        workout = await self.get_workout(user_id, workout_id)
        if workout is None:
            return None

        workout.verification_status = VerificationStatus.CONFIRMED.value
        workout.user_entered_stress = workout.stress
        await self.session.commit()

        calculated = (
            workout.calculated_stress if workout.calculated_stress is not None else workout.stress
        )
        profile = await self.calibration.record_comparison(
            user_id,
            workout.category,
            calculated=calculated,
            ground_truth=workout.stress,
            confidence=1.0,
            workout_id=workout.id,
            event_key=f"direct:{workout.id}:{workout.stress:.3f}",
        )
        self.logger.info("Workout confirmed", user_id=user_id, workout_id=workout.id)
        return VerificationResult(workout, profile)

    async def correct(
        self, user_id: str, workout_id: str, stress: float
    ) -> VerificationResult | None:
        """Replace a workout's stress score with the athlete's value.

        ``calculated_stress`` keeps the model output; the entered value
        becomes authoritative and the PMC is recomputed from that day.

        Raises:
            InvalidCorrectionError: If ``stress`` is outside 0-1000 or not finite
        """
        stress = validate_stress(stress)
        workout = await self.get_workout(user_id, workout_id)
        if workout is None:
            return None

        previous = workout.stress
        if workout.calculated_stress is None:
            workout.calculated_stress = previous
        workout.user_entered_stress = stress
        workout.stress = stress
        workout.stress_type = StressScoreType.USER_ENTERED.value
        workout.verification_status = VerificationStatus.CORRECTED.value
        await self.session.commit()

        self.logger.info(
            "Workout stress corrected",
            user_id=user_id,
            workout_id=workout.id,
            calculated=workout.calculated_stress,
            entered=stress,
        )

        profile = await self.calibration.record_comparison(
            user_id,
            workout.category,
            calculated=workout.calculated_stress,
            ground_truth=stress,
            confidence=1.0,
            workout_id=workout.id,
            event_key=f"direct:{workout.id}:{stress:.3f}",
        )

        recompute = None
        if stress != previous:
            recompute = await self.pmc.recompute_from(user_id, workout.activity_date)
        return VerificationResult(workout, profile, recompute)

    async def anchor_metrics(
        self,
        user_id: str,
        day: date,
        ctl: float,
        atl: float,
        tsb: float | None = None,
    ) -> AnchorOutcome:
        """Pin a day's CTL/ATL and feed the drift back into calibration.

        Raises:
            InvalidCorrectionError: If the values are out of range or inconsistent
        """
        ctl, atl = validate_anchor(ctl, atl, tsb)
        anchor = await self.pmc.anchor(user_id, day, ctl, atl)
        window = await self.aggregator.window_before(
            user_id, day, self.config.calibration_drift_window_days
        )
        profiles = await self.calibration.record_pmc_drift(
            user_id,
            day,
            anchor.ctl,
            anchor.atl,
            anchor.previous_ctl,
            anchor.previous_atl,
            window,
        )
        return AnchorOutcome(anchor, window, profiles)
