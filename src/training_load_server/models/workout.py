"""Canonical workout record model.

One WorkoutRecord per real-world training session, whichever sources
reported it. Each contributing source leaves a WorkoutLink (its foreign
identifier) on the record, so the same session arriving again from that
source is recognised instead of duplicated.
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
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from training_load_server.models.base import (
    Base,
    TimestampMixin,
    UserScopedMixin,
    generate_uuid,
    utcnow,
)
from training_load_server.telemetry import Telemetry


class Source(str, Enum):
    """Where an activity came from."""

    DEVICE_SYNC = "device_sync"
    BULK_IMPORT = "bulk_import"
    THIRD_PARTY_SERVICE = "third_party_service"

    @property
    def fidelity(self) -> int:
        """Rank of timing/route detail this source carries.

        Bulk imports are date-only (midnight, no GPS); device sync has exact
        times; the third-party service adds titles and GPS routes.
        """
        return _SOURCE_FIDELITY[self]


_SOURCE_FIDELITY = {
    Source.BULK_IMPORT: 0,
    Source.DEVICE_SYNC: 1,
    Source.THIRD_PARTY_SERVICE: 2,
}


class ActivityCategory(str, Enum):
    """Activity category, normalized across sources."""

    RUN = "run"
    BIKE = "bike"
    SWIM = "swim"
    STRENGTH = "strength"
    OTHER = "other"

    @classmethod
    def from_label(cls, label: str | None) -> "ActivityCategory":
        """Map a free-form source label to a category.

        Labels are compared lowercased with separators removed, so
        "VirtualRide", "virtual_ride" and "Virtual Ride" are the same.
        """
        if not label:
            return cls.OTHER
        key = "".join(ch for ch in label.lower() if ch.isalnum())
        try:
            return cls(key)
        except ValueError:
            return _CATEGORY_ALIASES.get(key, cls.OTHER)


_CATEGORY_ALIASES = {
    # Running
    "running": ActivityCategory.RUN,
    "trailrun": ActivityCategory.RUN,
    "trailrunning": ActivityCategory.RUN,
    "treadmill": ActivityCategory.RUN,
    "treadmillrunning": ActivityCategory.RUN,
    "virtualrun": ActivityCategory.RUN,
    # Cycling
    "ride": ActivityCategory.BIKE,
    "cycling": ActivityCategory.BIKE,
    "virtualride": ActivityCategory.BIKE,
    "indoorcycling": ActivityCategory.BIKE,
    "mountainbikeride": ActivityCategory.BIKE,
    "gravelride": ActivityCategory.BIKE,
    "ebikeride": ActivityCategory.BIKE,
    # Swimming
    "swimming": ActivityCategory.SWIM,
    "poolswim": ActivityCategory.SWIM,
    "openwaterswim": ActivityCategory.SWIM,
    # Strength
    "weighttraining": ActivityCategory.STRENGTH,
    "strengthtraining": ActivityCategory.STRENGTH,
    "functionalstrengthtraining": ActivityCategory.STRENGTH,
    "crossfit": ActivityCategory.STRENGTH,
}


class VerificationStatus(str, Enum):
    """Whether a workout's stress score has been checked by the athlete."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CORRECTED = "corrected"


class StressScoreType(str, Enum):
    """How a workout's stress score was derived."""

    POWER = "power"
    RUNNING_POWER = "running_power"
    PACE = "pace"
    HEART_RATE = "heart_rate"
    SWIM = "swim"
    ESTIMATED = "estimated"
    IMPORTED = "imported"
    USER_ENTERED = "user_entered"


class WorkoutLink(Base):
    """Foreign identifier a source uses for a canonical workout.

    At most one link per (workout, source), and a given source identifier
    points at exactly one workout.
    """

    __tablename__ = "workout_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workout_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("workout_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    linked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    workout: Mapped["WorkoutRecord"] = relationship(back_populates="links")

    __table_args__ = (
        UniqueConstraint("user_id", "source", "external_id", name="uq_workout_link_external"),
        UniqueConstraint("workout_id", "source", name="uq_workout_link_source"),
    )

    def __repr__(self) -> str:
        return f"<WorkoutLink(source={self.source}, external_id={self.external_id})>"

    def to_dict(self) -> dict[str, str]:
        return {"source": self.source, "externalId": self.external_id}


class WorkoutRecord(Base, UserScopedMixin, TimestampMixin):
    """One real-world training session.

    ``stress`` is the authoritative value used by the PMC. ``calculated_stress``
    keeps the model's original output even after the athlete corrects it;
    ``user_entered_stress`` holds that correction.
    """

    __tablename__ = "workout_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)

    # Origin
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    detail_source: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Source whose timing and route the record currently carries",
    )

    # Timing
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    activity_date: Mapped[date] = mapped_column(
        Date, nullable=False, comment="Calendar day in the athlete timezone"
    )
    duration_seconds: Mapped[float | None] = mapped_column(Float)

    # Classification
    distance_meters: Mapped[float | None] = mapped_column(Float)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    indoor: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    title: Mapped[str | None] = mapped_column(String(255))

    # Stress score
    stress: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    stress_type: Mapped[str] = mapped_column(
        String(32), default=StressScoreType.ESTIMATED.value, nullable=False
    )
    calculated_stress: Mapped[float | None] = mapped_column(Float)
    user_entered_stress: Mapped[float | None] = mapped_column(Float)
    verification_status: Mapped[str] = mapped_column(
        String(20), default=VerificationStatus.PENDING.value, nullable=False
    )

    # Route (Google encoded polyline)
    route: Mapped[str | None] = mapped_column(Text)
    has_route: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    route_point_count: Mapped[int | None] = mapped_column(Integer)

    # Telemetry (each column maps to a Telemetry field of the same name)
    avg_heart_rate: Mapped[float | None] = mapped_column(Float)
    max_heart_rate: Mapped[float | None] = mapped_column(Float)
    avg_power: Mapped[float | None] = mapped_column(Float)
    max_power: Mapped[float | None] = mapped_column(Float)
    normalized_power: Mapped[float | None] = mapped_column(Float)
    avg_cadence: Mapped[float | None] = mapped_column(Float)
    max_cadence: Mapped[float | None] = mapped_column(Float)
    avg_pace_seconds_per_km: Mapped[float | None] = mapped_column(Float)
    ascent_meters: Mapped[float | None] = mapped_column(Float)
    calories: Mapped[float | None] = mapped_column(Float)

    # Manual review
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    review_reason: Mapped[str | None] = mapped_column(String(100))

    links: Mapped[list[WorkoutLink]] = relationship(
        back_populates="workout",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by=WorkoutLink.id,
    )

    __table_args__ = (
        Index("ix_workout_records_user_date", "user_id", "activity_date"),
        {"comment": "Deduplicated workouts merged across all sources"},
    )

    def __repr__(self) -> str:
        return (
            f"<WorkoutRecord(id={self.id}, date={self.activity_date}, "
            f"category={self.category}, stress={self.stress})>"
        )

    @property
    def telemetry(self) -> Telemetry:
        values = {name: getattr(self, name) for name in Telemetry.field_names()}
        return Telemetry.from_values(values)

    @property
    def linked_sources(self) -> set[str]:
        return {link.source for link in self.links}

    def has_link(self, source: Source | str) -> bool:
        """Return True if ``source`` has already contributed to this record."""
        value = source.value if isinstance(source, Source) else source
        return value in self.linked_sources

    def link_for(self, source: Source | str) -> str | None:
        value = source.value if isinstance(source, Source) else source
        for link in self.links:
            if link.source == value:
                return link.external_id
        return None

    @property
    def is_verified(self) -> bool:
        return self.verification_status != VerificationStatus.PENDING.value

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the stable persisted field names."""
        return {
            "id": self.id,
            "source": self.source,
            "linkingKeys": [link.to_dict() for link in self.links],
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "durationSeconds": self.duration_seconds,
            "distanceMeters": self.distance_meters,
            "category": self.category,
            "indoor": self.indoor,
            "title": self.title,
            "stress": self.stress,
            "stressType": self.stress_type,
            "calculatedStress": self.calculated_stress,
            "userEnteredStress": self.user_entered_stress,
            "verificationStatus": self.verification_status,
            "route": self.route,
            "hasRoute": self.has_route,
            "needsReview": self.needs_review,
            "telemetry": self.telemetry.to_values(),
        }
