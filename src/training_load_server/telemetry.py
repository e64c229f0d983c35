"""Per-workout telemetry readings.

Each metric on a workout is either ``Known(value)`` or ``UNKNOWN``. Merging
two workouts fills only the unknown readings of the existing one, so a
known value can never be overwritten by accident:

    existing = Telemetry(avg_heart_rate=Known(142.0))
    incoming = Telemetry(avg_heart_rate=Known(150.0), avg_power=Known(210.0))
    existing.fill_gaps(incoming)
    # Telemetry(avg_heart_rate=Known(142.0), avg_power=Known(210.0), ...)
"""

from dataclasses import dataclass, fields, replace
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Known(Generic[T]):
    """A measured value."""

    value: T


@dataclass(frozen=True, slots=True)
class Unknown:
    """No measurement available."""

    def __repr__(self) -> str:
        return "UNKNOWN"


UNKNOWN = Unknown()

Reading = Known[float] | Unknown


def reading(value: float | None) -> Reading:
    """Wrap an optional number from the storage or wire layer."""
    if value is None:
        return UNKNOWN
    return Known(float(value))


def value_of(item: Reading) -> float | None:
    """Unwrap a reading back to an optional number for storage."""
    if isinstance(item, Known):
        return item.value
    return None


@dataclass(frozen=True, slots=True)
class Telemetry:
    """Bundle of per-workout metric readings.

    Field names match the WorkoutRecord column names one to one.
    """

    avg_heart_rate: Reading = UNKNOWN
    max_heart_rate: Reading = UNKNOWN
    avg_power: Reading = UNKNOWN
    max_power: Reading = UNKNOWN
    normalized_power: Reading = UNKNOWN
    avg_cadence: Reading = UNKNOWN
    max_cadence: Reading = UNKNOWN
    avg_pace_seconds_per_km: Reading = UNKNOWN
    ascent_meters: Reading = UNKNOWN
    calories: Reading = UNKNOWN

    @classmethod
    def field_names(cls) -> tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    @classmethod
    def from_values(cls, values: dict[str, float | None]) -> "Telemetry":
        """Build from a mapping of optional numbers; unrelated keys are ignored."""
        return cls(**{name: reading(values.get(name)) for name in cls.field_names()})

    def to_values(self) -> dict[str, float | None]:
        return {name: value_of(getattr(self, name)) for name in self.field_names()}

    def fill_gaps(self, other: "Telemetry") -> "Telemetry":
        """Return a copy where every unknown reading is taken from ``other``."""
        updates = {}
        for name in self.field_names():
            mine = getattr(self, name)
            if isinstance(mine, Unknown):
                updates[name] = getattr(other, name)
            elif not isinstance(mine, Known):
                raise TypeError(f"{name} holds {mine!r}, expected Known or Unknown")
        return replace(self, **updates)

    def diff(self, other: "Telemetry") -> dict[str, float | None]:
        """Return ``{field: value}`` for readings of self that differ from ``other``."""
        return {
            name: value_of(getattr(self, name))
            for name in self.field_names()
            if getattr(self, name) != getattr(other, name)
        }

    @property
    def known_count(self) -> int:
        return sum(1 for name in self.field_names() if isinstance(getattr(self, name), Known))
