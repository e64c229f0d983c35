"""Field-level merge of a matched activity into an existing workout.

Precedence, per field:

    ALWAYS (when the new source has strictly higher timing/route fidelity
    than the source the record's timing currently comes from)
        linking key (added), title, start/end time, route + route flag

    NEVER
        stress, stress type, original source marker

    ONLY IF ABSENT
        heart rate, power, cadence, pace, ascent, calories, distance

``MergePolicy.merge`` is pure: it returns a ``MergeResult`` describing the
changes and leaves the record untouched. ``apply_merge`` writes a result
back onto the record. ``MergePolicy.reconcile`` returns the merged workout
as a detached copy, for previews that must not touch the stored record.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import inspect

from training_load_server.core.dates import ensure_aware, local_day
from training_load_server.models.workout import Source, WorkoutLink, WorkoutRecord
from training_load_server.schemas.activity import NormalizedActivity

logger = structlog.get_logger()

# Columns merge is never allowed to write
PROTECTED_FIELDS = frozenset(
    {"stress", "stress_type", "source", "calculated_stress", "user_entered_stress"}
)


@dataclass(frozen=True)
class MergeResult:
    """Changes to apply to an existing record.

    Attributes:
        record_id: Record the changes belong to
        changes: Column name -> new value, only for values that differ
        link: (source, external_id) to add to the record
        upgraded_detail: True if timing/route were taken from the new source
        three_way: True if the record already carried two or more sources
    """

    record_id: str
    changes: dict[str, Any] = field(default_factory=dict)
    link: tuple[Source, str] | None = None
    upgraded_detail: bool = False
    three_way: bool = False

    @property
    def changed_fields(self) -> list[str]:
        return sorted(self.changes)


class MergePolicy:
    """Reconcile an existing workout with a matched activity from another source."""

    def __init__(self, timezone: str = "UTC") -> None:
        self.timezone = timezone
        self.logger = logger.bind(service="merge")

    def merge(
        self, existing: WorkoutRecord, candidate: NormalizedActivity, source: Source
    ) -> MergeResult:
        """Compute the reconciled field values for ``existing``.

        Args:
            existing: Record the candidate matched
            candidate: Inbound activity
            source: Source the candidate came from

        Returns:
            MergeResult listing only the fields that change
        """
        proposed: dict[str, Any] = {}

        upgraded = source.fidelity > Source(existing.detail_source).fidelity
        if upgraded:
            proposed.update(self._detail_fields(existing, candidate, source))

        # Gap filling never contradicts a known reading
        filled = existing.telemetry.fill_gaps(candidate.telemetry())
        proposed.update(filled.diff(existing.telemetry))

        if not existing.distance_meters and candidate.has_distance:
            proposed["distance_meters"] = candidate.distance_meters

        changes = {
            name: value
            for name, value in proposed.items()
            if name not in PROTECTED_FIELDS and not _same_value(getattr(existing, name), value)
        }

        foreign_sources = existing.linked_sources - {source.value}
        three_way = len(foreign_sources) >= 2
        if three_way:
            self.logger.warning(
                "Three-way merge",
                record_id=existing.id,
                linked_sources=sorted(foreign_sources),
                incoming_source=source.value,
                upgraded_detail=upgraded,
            )

        return MergeResult(
            record_id=existing.id,
            changes=changes,
            link=(source, candidate.external_id),
            upgraded_detail=upgraded,
            three_way=three_way,
        )

    def reconcile(
        self, existing: WorkoutRecord, candidate: NormalizedActivity, source: Source
    ) -> WorkoutRecord:
        """Return the reconciled workout without modifying ``existing``.

        The result is a transient copy carrying the merged values and the
        combined linking keys; it is not attached to any session.
        """
        return apply_merge(detached_copy(existing), self.merge(existing, candidate, source))

    def _detail_fields(
        self, existing: WorkoutRecord, candidate: NormalizedActivity, source: Source
    ) -> dict[str, Any]:
        duration = candidate.duration_seconds or existing.duration_seconds or 0
        start = candidate.start_time
        detail: dict[str, Any] = {
            "start_date": start,
            "end_date": start + timedelta(seconds=duration),
            "activity_date": local_day(start, self.timezone),
            "detail_source": source.value,
        }
        if candidate.title:
            detail["title"] = candidate.title
        summary = candidate.route_summary()
        if summary is not None:
            detail["route"] = candidate.route_polyline
            detail["has_route"] = True
            detail["route_point_count"] = summary.point_count
        return detail


def _same_value(current: Any, proposed: Any) -> bool:
    if isinstance(current, datetime) and isinstance(proposed, datetime):
        return ensure_aware(current) == ensure_aware(proposed)
    return current == proposed


def detached_copy(record: WorkoutRecord) -> WorkoutRecord:
    """Transient copy of ``record`` with its column values and linking keys."""
    columns = {attr.key: getattr(record, attr.key) for attr in inspect(WorkoutRecord).column_attrs}
    copy = WorkoutRecord(**columns)
    copy.links = [
        WorkoutLink(user_id=link.user_id, source=link.source, external_id=link.external_id)
        for link in record.links
    ]
    return copy


def apply_merge(record: WorkoutRecord, result: MergeResult) -> WorkoutRecord:
    """Write a MergeResult onto ``record`` and add its linking key.

    Returns:
        The same record, mutated
    """
    if result.record_id != record.id:
        raise ValueError(f"Merge result for {result.record_id} applied to {record.id}")
    for name, value in result.changes.items():
        setattr(record, name, value)
    if result.link is not None:
        source, external_id = result.link
        if not record.has_link(source):
            record.links.append(
                WorkoutLink(user_id=record.user_id, source=source.value, external_id=external_id)
            )
    return record

