"""Stress-score calibration models.

CalibrationDataPoint rows are immutable comparison events. ScalingProfile
rows are the per-category summary rebuilt from them by the calibration
engine.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from training_load_server.models.base import Base, TimestampMixin, UserScopedMixin, utcnow


class CalibrationSignal(str, Enum):
    """Kind of evidence a data point carries.

    Attributes:
        CONFIRMED: Athlete confirmed the calculated stress score
        CORRECTED: Athlete entered a different stress score
        PMC_DRIFT: Derived from a manual CTL/ATL correction
    """

    CONFIRMED = "confirmed"
    CORRECTED = "corrected"
    PMC_DRIFT = "pmc_drift"


class CalibrationDataPoint(Base, UserScopedMixin):
    """One ground-truth comparison event.

    ``id`` is monotonically increasing and defines the order in which points
    are replayed into a profile. ``event_key`` makes recording idempotent.
    """

    __tablename__ = "calibration_data_points"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_key: Mapped[str] = mapped_column(String(255), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    signal: Mapped[str] = mapped_column(String(20), nullable=False)

    calculated: Mapped[float] = mapped_column(Float, nullable=False)
    ground_truth: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)

    # PMC drift context, only for PMC_DRIFT points
    pmc_ctl_delta: Mapped[float | None] = mapped_column(Float)
    pmc_atl_delta: Mapped[float | None] = mapped_column(Float)
    anchor_date: Mapped[date | None] = mapped_column(Date)

    workout_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("workout_records.id", ondelete="SET NULL")
    )
    is_valid: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "event_key", name="uq_calibration_event"),
        Index("ix_calibration_points_user_category", "user_id", "category", "id"),
    )

    def __repr__(self) -> str:
        return (
            f"<CalibrationDataPoint(id={self.id}, category={self.category}, "
            f"calculated={self.calculated}, ground_truth={self.ground_truth})>"
        )

    @property
    def ratio(self) -> float | None:
        """Ground truth over calculated, or None when calculated is not positive."""
        if self.calculated <= 0:
            return None
        return self.ground_truth / self.calculated

    @property
    def is_usable(self) -> bool:
        return self.is_valid and self.ratio is not None and self.confidence > 0

    @property
    def pmc_delta(self) -> dict[str, float | None] | None:
        if self.pmc_ctl_delta is None and self.pmc_atl_delta is None:
            return None
        return {"ctl": self.pmc_ctl_delta, "atl": self.pmc_atl_delta}

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the stable persisted field names."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "category": self.category,
            "calculated": self.calculated,
            "groundTruth": self.ground_truth,
            "confidence": self.confidence,
            "pmcDelta": self.pmc_delta,
            "signal": self.signal,
            "isValid": self.is_valid,
        }


class ScalingProfile(Base, UserScopedMixin, TimestampMixin):
    """Per-category stress-score correction model.

    The row with category ``"all"`` is the user-wide profile, fed by every
    category's points.

    ``scale_factor`` is the robust estimate of ground_truth / calculated.
    ``interval_width`` is the half-width of its ~95% interval; contradictory
    evidence widens it instead of moving the estimate around.
    """

    __tablename__ = "scaling_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category: Mapped[str] = mapped_column(String(20), nullable=False)

    scale_factor: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    bias: Mapped[float] = mapped_column(
        Float, default=0.0, nullable=False, comment="Mean of ground_truth - calculated"
    )
    confidence: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    sample_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    weight_sum: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    ratio_variance: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    interval_width: Mapped[float | None] = mapped_column(Float)

    calibration_complete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    learning_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_point_id: Mapped[int | None] = mapped_column(Integer)
    recalculated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "category", name="uq_scaling_profile_category"),
    )

    def __repr__(self) -> str:
        return (
            f"<ScalingProfile(category={self.category}, factor={self.scale_factor:.3f}, "
            f"confidence={self.confidence:.2f}, samples={self.sample_count})>"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "scaleFactor": self.scale_factor,
            "bias": self.bias,
            "confidence": self.confidence,
            "sampleCount": self.sample_count,
            "intervalWidth": self.interval_width,
            "calibrationComplete": self.calibration_complete,
            "learningEnabled": self.learning_enabled,
        }
