"""Tests for telemetry readings, route polylines and activity normalization."""

import pytest
from pydantic import ValidationError

from training_load_server.models.workout import ActivityCategory, Source, StressScoreType
from training_load_server.telemetry import UNKNOWN, Known, Telemetry
from training_load_server.transformers import polyline
from training_load_server.transformers.activity import ActivityTransformer
from tests.fixtures import make_activity

ROUTE = "_p~iF~ps|U_ulLnnqC_mqNvxq`@"
ROUTE_POINTS = [(38.5, -120.2), (40.7, -120.95), (43.252, -126.453)]


class TestTelemetry:
    """Known/unknown readings and gap filling."""

    def test_fill_gaps_never_overwrites_known(self):
        existing = Telemetry(avg_heart_rate=Known(142.0))
        incoming = Telemetry(avg_heart_rate=Known(150.0), avg_power=Known(210.0))

        filled = existing.fill_gaps(incoming)

        assert filled.avg_heart_rate == Known(142.0)
        assert filled.avg_power == Known(210.0)
        assert filled.max_power is UNKNOWN

    def test_diff_lists_changed_readings(self):
        existing = Telemetry(avg_heart_rate=Known(142.0))
        filled = existing.fill_gaps(Telemetry(calories=Known(650.0)))

        assert filled.diff(existing) == {"calories": 650.0}

    def test_values_round_trip_through_storage_shape(self):
        readings = Telemetry.from_values({"avg_power": 200, "unrelated": 5})

        values = readings.to_values()

        assert values["avg_power"] == 200.0
        assert values["avg_heart_rate"] is None
        assert "unrelated" not in values
        assert readings.known_count == 1


class TestPolyline:
    """Google encoded polyline codec."""

    def test_decode_reference_route(self):
        assert polyline.decode(ROUTE) == ROUTE_POINTS

    def test_encode_reference_route(self):
        assert polyline.encode(ROUTE_POINTS) == ROUTE

    def test_summarize(self):
        summary = polyline.summarize(ROUTE)

        assert summary.point_count == 3
        assert summary.start == pytest.approx((38.5, -120.2))
        assert summary.end == pytest.approx((43.252, -126.453))

    def test_truncated_polyline_is_rejected(self):
        with pytest.raises(ValueError):
            polyline.decode("_p~iF")

    def test_invalid_character_is_rejected(self):
        with pytest.raises(ValueError):
            polyline.decode("_p~iF~ps|U !")


class TestNormalizedActivity:
    """Validation at the ingestion boundary."""

    @pytest.mark.parametrize(
        ("label", "category"),
        [
            ("VirtualRide", ActivityCategory.BIKE),
            ("Trail Run", ActivityCategory.RUN),
            ("swim", ActivityCategory.SWIM),
            ("WeightTraining", ActivityCategory.STRENGTH),
            ("Kayaking", ActivityCategory.OTHER),
        ],
    )
    def test_category_labels_are_normalized(self, label, category):
        assert make_activity(category=label).category == category

    def test_naive_start_time_is_utc(self):
        activity = make_activity(start_time="2024-06-01T07:00:00")

        assert activity.start_time.tzinfo is not None
        assert activity.start_time.utcoffset().total_seconds() == 0

    def test_malformed_route_is_rejected(self):
        with pytest.raises(ValidationError):
            make_activity(route_polyline="_p~iF")

    def test_out_of_range_stress_is_rejected(self):
        with pytest.raises(ValidationError):
            make_activity(stress_score=5000)

    def test_run_pace_is_derived(self):
        activity = make_activity(category="run", distance_meters=10000.0, duration_seconds=3000.0)

        assert activity.telemetry().avg_pace_seconds_per_km == Known(300.0)
        assert "avg_pace_seconds_per_km" in activity.known_metrics


class TestActivityTransformer:
    """NormalizedActivity -> WorkoutRecord columns."""

    def test_transform_sets_detail_and_route(self):
        activity = make_activity(
            source=Source.THIRD_PARTY_SERVICE.value, route_polyline=ROUTE, avg_power=205.0
        )

        data = ActivityTransformer.transform(activity, "athlete-1")

        assert data["detail_source"] == Source.THIRD_PARTY_SERVICE.value
        assert data["has_route"] is True
        assert data["route_point_count"] == 3
        assert data["stress"] == data["calculated_stress"] == 80.0
        assert data["avg_power"] == 205.0
        assert data["activity_date"].isoformat() == "2024-06-01"

    def test_bulk_import_stress_is_imported(self):
        activity = make_activity(source=Source.BULK_IMPORT.value, stress_type="heart_rate")

        data = ActivityTransformer.transform(activity, "athlete-1")

        assert data["stress_type"] == StressScoreType.IMPORTED.value

    def test_missing_stress_is_zero(self):
        data = ActivityTransformer.transform(make_activity(stress_score=None), "athlete-1")

        assert data["stress"] == 0.0
        assert data["stress_type"] == StressScoreType.ESTIMATED.value

    def test_calendar_day_follows_timezone(self):
        """05:00 UTC on 1 June is still 31 May in Los Angeles."""
        data = ActivityTransformer.transform(make_activity(), "athlete-1", "America/Los_Angeles")

        assert data["activity_date"].isoformat() == "2024-06-01"
        late = make_activity(start_time="2024-06-01T05:00:00+00:00")
        shifted = ActivityTransformer.transform(late, "athlete-1", "America/Los_Angeles")
        assert shifted["activity_date"].isoformat() == "2024-05-31"
