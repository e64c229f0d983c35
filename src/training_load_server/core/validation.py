"""Boundary validation for user-supplied corrections.

Values a user types in (a corrected stress score, a CTL/ATL anchor) are
checked here before they reach the calibration engine or the PMC anchor
logic. A value that fails is rejected whole; nothing is partially applied.
"""

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class ValueRange:
    """Inclusive range for a physiological or training value."""

    minimum: float
    maximum: float
    unit: str = ""

    def contains(self, value: float) -> bool:
        return self.minimum <= value <= self.maximum


CTL_RANGE = ValueRange(0, 500)
ATL_RANGE = ValueRange(0, 500)
TSB_RANGE = ValueRange(-200, 200)
STRESS_RANGE = ValueRange(0, 1000)
CONFIDENCE_RANGE = ValueRange(0, 1)
HEART_RATE_RANGE = ValueRange(30, 250, "bpm")
POWER_RANGE = ValueRange(0, 2500, "W")
DURATION_RANGE = ValueRange(0, 86400, "s")
PACE_RANGE = ValueRange(120, 1200, "s/km")

# Allowed slack when a caller supplies TSB alongside CTL and ATL
TSB_CONSISTENCY_TOLERANCE = 1.0


class InvalidCorrectionError(ValueError):
    """A user-supplied value is outside its sane range or not a number."""

    def __init__(
        self,
        field: str,
        value: float,
        allowed: ValueRange | None = None,
        reason: str | None = None,
    ) -> None:
        self.field = field
        self.value = value
        self.allowed = allowed
        if reason is None and allowed is not None:
            unit = f" {allowed.unit}" if allowed.unit else ""
            reason = f"must be between {allowed.minimum:g} and {allowed.maximum:g}{unit}"
        self.reason = reason or "invalid value"
        super().__init__(f"{field}={value!r} rejected: {self.reason}")

    def to_dict(self) -> dict[str, object]:
        return {
            "field": self.field,
            "value": self.value,
            "reason": self.reason,
            "minimum": self.allowed.minimum if self.allowed else None,
            "maximum": self.allowed.maximum if self.allowed else None,
        }


def validate_value(field: str, value: float, allowed: ValueRange) -> float:
    """Return ``value`` as float if it is finite and inside ``allowed``.

    Raises:
        InvalidCorrectionError: If the value is NaN, infinite or out of range
    """
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise InvalidCorrectionError(field, value, allowed, reason="not a number") from e
    if not math.isfinite(number):
        raise InvalidCorrectionError(field, number, allowed, reason="not a finite number")
    if not allowed.contains(number):
        raise InvalidCorrectionError(field, number, allowed)
    return number


def validate_stress(value: float, field: str = "stress") -> float:
    return validate_value(field, value, STRESS_RANGE)


def validate_confidence(value: float, field: str = "confidence") -> float:
    return validate_value(field, value, CONFIDENCE_RANGE)


def validate_anchor(ctl: float, atl: float, tsb: float | None = None) -> tuple[float, float]:
    """Validate a manual CTL/ATL correction.

    If the caller also supplies TSB it must agree with CTL - ATL.

    Returns:
        Tuple of validated (ctl, atl)
    """
    ctl = validate_value("ctl", ctl, CTL_RANGE)
    atl = validate_value("atl", atl, ATL_RANGE)
    if tsb is not None:
        tsb = validate_value("tsb", tsb, TSB_RANGE)
        if abs(tsb - (ctl - atl)) > TSB_CONSISTENCY_TOLERANCE:
            raise InvalidCorrectionError(
                "tsb",
                tsb,
                TSB_RANGE,
                reason=f"inconsistent with ctl - atl = {ctl - atl:.1f}",
            )
    return ctl, atl
