"""Normalized activity: the value every source client hands to ingestion.

Device sync, bulk CSV import and the third-party service client each turn
their own payloads into this shape. Validation here is the ingestion
boundary: anything that fails is malformed input and is skipped.
"""

from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field, field_validator

from training_load_server.core.dates import ensure_aware
from training_load_server.models.workout import ActivityCategory, Source, StressScoreType
from training_load_server.telemetry import Known, Telemetry, Unknown
from training_load_server.transformers import polyline


class NormalizedActivity(BaseModel):
    """One activity as reported by one source."""

    model_config = ConfigDict(frozen=True)

    source: Source = Field(description="Which ingestion pipeline produced this activity")
    external_id: str = Field(min_length=1, max_length=255, description="Source's own identifier")
    category: ActivityCategory = Field(description="Activity category (labels are normalized)")
    start_time: datetime = Field(description="Start time; naive values are taken as UTC")
    duration_seconds: float | None = Field(default=None, ge=0, le=86400)
    distance_meters: float | None = Field(default=None, ge=0)
    indoor: bool = Field(default=False, description="Trainer, treadmill or pool")
    title: str | None = Field(default=None, max_length=255)

    stress_score: float | None = Field(
        default=None, ge=0, le=1000, description="Stress score from the calculator, if known"
    )
    stress_type: StressScoreType = Field(default=StressScoreType.ESTIMATED)

    # Telemetry
    avg_heart_rate: float | None = Field(default=None, ge=30, le=250)
    max_heart_rate: float | None = Field(default=None, ge=30, le=250)
    avg_power: float | None = Field(default=None, ge=0, le=2500)
    max_power: float | None = Field(default=None, ge=0, le=2500)
    normalized_power: float | None = Field(default=None, ge=0, le=2500)
    avg_cadence: float | None = Field(default=None, ge=0, le=300)
    max_cadence: float | None = Field(default=None, ge=0, le=300)
    avg_pace_seconds_per_km: float | None = Field(default=None, gt=0)
    ascent_meters: float | None = Field(default=None, ge=0)
    calories: float | None = Field(default=None, ge=0)

    route_polyline: str | None = Field(default=None, description="Google encoded polyline")

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value: object) -> object:
        if isinstance(value, str) and not isinstance(value, ActivityCategory):
            return ActivityCategory.from_label(value)
        return value

    @field_validator("start_time")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @field_validator("route_polyline")
    @classmethod
    def _check_polyline(cls, value: str | None) -> str | None:
        if not value:
            return None
        polyline.decode(value)
        return value

    @property
    def has_distance(self) -> bool:
        return self.distance_meters is not None and self.distance_meters > 0

    @property
    def has_duration(self) -> bool:
        return self.duration_seconds is not None and self.duration_seconds > 0

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(seconds=self.duration_seconds or 0)

    def telemetry(self) -> Telemetry:
        """Telemetry readings, with pace derived for runs that lack one."""
        readings = Telemetry.from_values(self.model_dump(include=set(Telemetry.field_names())))
        if (
            isinstance(readings.avg_pace_seconds_per_km, Unknown)
            and self.category == ActivityCategory.RUN
            and self.has_distance
            and self.has_duration
        ):
            pace = self.duration_seconds / (self.distance_meters / 1000)
            readings = Telemetry.from_values(
                {**readings.to_values(), "avg_pace_seconds_per_km": pace}
            )
        return readings

    def route_summary(self) -> polyline.RouteSummary | None:
        if not self.route_polyline:
            return None
        return polyline.summarize(self.route_polyline)

    @property
    def known_metrics(self) -> list[str]:
        readings = self.telemetry()
        return [
            name for name in Telemetry.field_names() if isinstance(getattr(readings, name), Known)
        ]
