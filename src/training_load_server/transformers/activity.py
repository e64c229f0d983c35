"""Activity transformer.

Converts a NormalizedActivity into a database-ready WorkoutRecord dict.
"""

from typing import Any

from training_load_server.core.dates import local_day
from training_load_server.models.workout import Source, StressScoreType, VerificationStatus
from training_load_server.schemas.activity import NormalizedActivity
from training_load_server.telemetry import Telemetry


class ActivityTransformer:
    """Transform NormalizedActivity -> WorkoutRecord dict.

    Activity Fields -> Database Fields:
    - start_time -> start_date, activity_date (calendar day in athlete timezone)
    - start_time + duration_seconds -> end_date
    - stress_score -> stress and calculated_stress (0 when unknown)
    - stress_type -> stress_type (always "imported" for bulk imports)
    - source -> source and detail_source
    - route_polyline -> route, has_route, route_point_count
    - telemetry readings (pace derived for runs) -> telemetry columns
    """

    @staticmethod
    def transform(
        activity: NormalizedActivity, user_id: str, timezone: str = "UTC"
    ) -> dict[str, Any]:
        """Convert a normalized activity to a dict for WorkoutRecord(**data).

        Args:
            activity: Validated inbound activity
            user_id: Athlete the record belongs to
            timezone: IANA timezone deciding the calendar day

        Returns:
            Dict ready for database insertion (links are added by the caller)
        """
        stress = activity.stress_score or 0.0
        # Bulk exports carry a stress number with no derivation behind it
        stress_type = (
            StressScoreType.IMPORTED
            if activity.source == Source.BULK_IMPORT and activity.stress_score is not None
            else activity.stress_type
        )
        summary = activity.route_summary()

        return {
            "user_id": user_id,
            "source": activity.source.value,
            "detail_source": activity.source.value,
            "start_date": activity.start_time,
            "end_date": activity.end_time,
            "activity_date": local_day(activity.start_time, timezone),
            "duration_seconds": activity.duration_seconds,
            "distance_meters": activity.distance_meters,
            "category": activity.category.value,
            "indoor": activity.indoor,
            "title": activity.title,
            "stress": stress,
            "stress_type": stress_type.value,
            "calculated_stress": stress,
            "user_entered_stress": None,
            "verification_status": VerificationStatus.PENDING.value,
            "route": activity.route_polyline if summary else None,
            "has_route": summary is not None,
            "route_point_count": summary.point_count if summary else None,
            **ActivityTransformer.telemetry_columns(activity.telemetry()),
        }

    @staticmethod
    def telemetry_columns(readings: Telemetry) -> dict[str, float | None]:
        """Telemetry readings as column values (unknown -> None)."""
        return readings.to_values()
