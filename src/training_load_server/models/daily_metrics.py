"""Daily Performance Management Chart values."""

from datetime import date
from enum import Enum
from typing import Any

from sqlalchemy import Boolean, Date, Float, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from training_load_server.models.base import Base, TimestampMixin, UserScopedMixin, generate_uuid


class MetricProvenance(str, Enum):
    """Where a day's CTL/ATL came from.

    Attributes:
        CALCULATED: Produced by a recompute pass
        ANCHORED: Entered by the athlete; seeds forward recomputation
        CARRIED_FORWARD: Day's stress was not a finite number, previous
            CTL/ATL were kept
    """

    CALCULATED = "calculated"
    ANCHORED = "anchored"
    CARRIED_FORWARD = "carried_forward"


class DailyMetrics(Base, UserScopedMixin, TimestampMixin):
    """CTL, ATL and TSB for one athlete on one calendar day.

    TSB is always CTL - ATL. ``calculated_ctl``/``calculated_atl`` remember
    what the model produced before an anchor replaced it, which is the
    drift signal handed to calibration.
    """

    __tablename__ = "daily_metrics"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    date: Mapped[date] = mapped_column(Date, nullable=False)

    total_stress: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    ctl: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    atl: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    tsb: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    anchored: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    provenance: Mapped[str] = mapped_column(
        String(20), default=MetricProvenance.CALCULATED.value, nullable=False
    )
    calculated_ctl: Mapped[float | None] = mapped_column(Float)
    calculated_atl: Mapped[float | None] = mapped_column(Float)

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_daily_metrics_user_date"),
        {"comment": "Performance Management Chart, one row per athlete per day"},
    )

    def __repr__(self) -> str:
        return (
            f"<DailyMetrics(date={self.date}, ctl={self.ctl:.1f}, "
            f"atl={self.atl:.1f}, tsb={self.tsb:.1f}, anchored={self.anchored})>"
        )

    def set_load(self, ctl: float, atl: float) -> None:
        """Set CTL/ATL and keep TSB consistent."""
        self.ctl = ctl
        self.atl = atl
        self.tsb = ctl - atl

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the stable persisted field names."""
        return {
            "date": self.date.isoformat(),
            "totalStress": self.total_stress,
            "ctl": self.ctl,
            "atl": self.atl,
            "tsb": self.tsb,
            "anchored": self.anchored,
            "provenance": self.provenance,
        }
