"""Tests for field-level merge precedence."""

from datetime import timedelta

import pytest

from training_load_server.models.workout import Source, WorkoutLink
from training_load_server.services.merge import MergePolicy, apply_merge
from tests.fixtures import RIDE_START, make_activity, make_record

ROUTE = "_p~iF~ps|U_ulLnnqC_mqNvxq`@"


@pytest.fixture
def policy() -> MergePolicy:
    return MergePolicy("UTC")


def service_ride(**overrides):
    fields = {
        "source": Source.THIRD_PARTY_SERVICE.value,
        "external_id": "svc-1",
        "start_time": RIDE_START + timedelta(minutes=2),
        "title": "Morning loop",
        "route_polyline": ROUTE,
        "stress_score": 120.0,
    }
    fields.update(overrides)
    return make_activity(**fields)


class TestFidelityUpgrade:
    """Timing, title and route follow the highest-fidelity source."""

    def test_higher_fidelity_source_replaces_timing_and_route(self, policy: MergePolicy):
        record = make_record()
        candidate = service_ride()

        result = policy.merge(record, candidate, Source.THIRD_PARTY_SERVICE)

        assert result.upgraded_detail
        assert result.changes["start_date"] == candidate.start_time
        assert result.changes["end_date"] == candidate.start_time + timedelta(hours=1)
        assert result.changes["title"] == "Morning loop"
        assert result.changes["route"] == ROUTE
        assert result.changes["has_route"] is True
        assert result.changes["route_point_count"] == 3
        assert result.changes["detail_source"] == Source.THIRD_PARTY_SERVICE.value

    def test_lower_fidelity_source_keeps_timing(self, policy: MergePolicy):
        """A date-only bulk import never moves an exactly-timed record."""
        record = make_record()
        candidate = make_activity(
            source=Source.BULK_IMPORT.value,
            external_id="csv-1",
            start_time=RIDE_START.replace(hour=0),
            title="Imported ride",
        )

        result = policy.merge(record, candidate, Source.BULK_IMPORT)

        assert not result.upgraded_detail
        assert "start_date" not in result.changes
        assert "title" not in result.changes

    def test_equal_timing_is_not_reported_as_change(self, policy: MergePolicy):
        record = make_record()
        candidate = service_ride(start_time=RIDE_START, title=None, route_polyline=None)

        result = policy.merge(record, candidate, Source.THIRD_PARTY_SERVICE)

        assert result.upgraded_detail
        assert "start_date" not in result.changes
        assert "activity_date" not in result.changes


class TestProtectedFields:
    """Stress score and origin are never written by a merge."""

    def test_stress_is_never_overwritten(self, policy: MergePolicy):
        record = make_record(stress_score=80.0)

        result = policy.merge(record, service_ride(stress_score=120.0), Source.THIRD_PARTY_SERVICE)
        apply_merge(record, result)

        assert record.stress == 80.0
        assert record.calculated_stress == 80.0
        assert record.source == Source.DEVICE_SYNC.value
        assert "stress" not in result.changes
        assert "stress_type" not in result.changes


class TestGapFilling:
    """Telemetry and distance are only filled where unknown."""

    def test_known_reading_is_kept_and_unknown_filled(self, policy: MergePolicy):
        record = make_record(avg_heart_rate=142.0)
        candidate = service_ride(avg_heart_rate=150.0, avg_power=210.0)

        result = policy.merge(record, candidate, Source.THIRD_PARTY_SERVICE)

        assert "avg_heart_rate" not in result.changes
        assert result.changes["avg_power"] == 210.0

    def test_missing_distance_is_filled(self, policy: MergePolicy):
        record = make_record(distance_meters=None)

        result = policy.merge(record, service_ride(), Source.THIRD_PARTY_SERVICE)

        assert result.changes["distance_meters"] == 30000.0

    def test_known_distance_is_kept(self, policy: MergePolicy):
        record = make_record(distance_meters=30500.0)

        result = policy.merge(record, service_ride(), Source.THIRD_PARTY_SERVICE)

        assert "distance_meters" not in result.changes


class TestLinksAndThreeWay:
    """Linking keys accumulate; a third source is flagged."""

    def test_apply_merge_adds_link(self, policy: MergePolicy):
        record = make_record()

        apply_merge(record, policy.merge(record, service_ride(), Source.THIRD_PARTY_SERVICE))

        assert record.linked_sources == {
            Source.DEVICE_SYNC.value,
            Source.THIRD_PARTY_SERVICE.value,
        }
        assert record.link_for(Source.THIRD_PARTY_SERVICE) == "svc-1"

    def test_two_sources_is_not_three_way(self, policy: MergePolicy):
        result = policy.merge(make_record(), service_ride(), Source.THIRD_PARTY_SERVICE)

        assert not result.three_way

    def test_third_source_is_three_way(self, policy: MergePolicy):
        record = make_record()
        record.links.append(
            WorkoutLink(user_id=record.user_id, source=Source.BULK_IMPORT.value, external_id="csv")
        )

        result = policy.merge(record, service_ride(), Source.THIRD_PARTY_SERVICE)
        apply_merge(record, result)

        assert result.three_way
        assert len(record.links) == 3

    def test_merge_is_pure(self, policy: MergePolicy):
        """Computing a merge leaves the record untouched."""
        record = make_record()
        before = record.to_dict()

        policy.merge(record, service_ride(avg_power=210.0), Source.THIRD_PARTY_SERVICE)

        assert record.to_dict() == before

    def test_result_for_other_record_is_rejected(self, policy: MergePolicy):
        first = make_record(record_id="first")
        second = make_record(record_id="second")
        result = policy.merge(first, service_ride(), Source.THIRD_PARTY_SERVICE)

        with pytest.raises(ValueError):
            apply_merge(second, result)


class TestReconcile:
    """The merged workout as a detached copy."""

    def test_reconcile_returns_merged_copy(self, policy: MergePolicy):
        record = make_record()
        before = record.to_dict()

        merged = policy.reconcile(record, service_ride(), Source.THIRD_PARTY_SERVICE)

        assert merged is not record
        assert merged.id == record.id
        assert merged.title == "Morning loop"
        assert merged.start_date == RIDE_START + timedelta(minutes=2)
        assert merged.stress == record.stress
        assert merged.linked_sources == {
            Source.DEVICE_SYNC.value,
            Source.THIRD_PARTY_SERVICE.value,
        }
        assert record.to_dict() == before
        assert len(record.links) == 1
