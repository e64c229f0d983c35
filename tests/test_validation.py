"""Tests for boundary validation of user-supplied corrections."""

import math

import pytest

from training_load_server.core.validation import (
    HEART_RATE_RANGE,
    InvalidCorrectionError,
    validate_anchor,
    validate_confidence,
    validate_stress,
    validate_value,
)


class TestValidateStress:
    """Stress scores must be finite and within 0-1000."""

    @pytest.mark.parametrize("value", [0, 85.5, 1000])
    def test_accepts_range(self, value):
        assert validate_stress(value) == float(value)

    @pytest.mark.parametrize("value", [-1, 1000.1, math.nan, math.inf, -math.inf])
    def test_rejects_out_of_range_and_non_finite(self, value):
        with pytest.raises(InvalidCorrectionError) as exc_info:
            validate_stress(value)

        assert exc_info.value.field == "stress"

    def test_rejects_non_number(self):
        with pytest.raises(InvalidCorrectionError, match="not a number"):
            validate_stress("lots")  # type: ignore[arg-type]

    def test_error_is_a_value_error(self):
        """Callers that only know ValueError still see the rejection."""
        with pytest.raises(ValueError):
            validate_stress(-5)


class TestValidateAnchor:
    """CTL/ATL anchors and optional TSB consistency."""

    def test_accepts_consistent_values(self):
        assert validate_anchor(60, 70, -10) == (60.0, 70.0)

    def test_tsb_is_optional(self):
        assert validate_anchor(60, 70) == (60.0, 70.0)

    def test_rejects_inconsistent_tsb(self):
        with pytest.raises(InvalidCorrectionError) as exc_info:
            validate_anchor(60, 70, 5)

        assert exc_info.value.field == "tsb"
        assert "inconsistent" in exc_info.value.reason

    def test_small_tsb_rounding_is_tolerated(self):
        assert validate_anchor(60.4, 70.0, -10.0) == (60.4, 70.0)

    @pytest.mark.parametrize(("ctl", "atl"), [(-1, 10), (10, 501), (math.nan, 10)])
    def test_rejects_out_of_range(self, ctl, atl):
        with pytest.raises(InvalidCorrectionError):
            validate_anchor(ctl, atl)


class TestErrorDetails:
    """InvalidCorrectionError carries what the API reports."""

    def test_to_dict_includes_bounds(self):
        with pytest.raises(InvalidCorrectionError) as exc_info:
            validate_value("avg_heart_rate", 300, HEART_RATE_RANGE)

        details = exc_info.value.to_dict()
        assert details["field"] == "avg_heart_rate"
        assert details["minimum"] == 30
        assert details["maximum"] == 250
        assert "bpm" in details["reason"]

    def test_confidence_range(self):
        assert validate_confidence(0.5) == 0.5
        with pytest.raises(InvalidCorrectionError):
            validate_confidence(1.5)
