"""Test fixtures for training-load-server."""

from tests.fixtures.workouts import (
    RIDE_START,
    USER_ID,
    activity_payload,
    make_activity,
    make_record,
    ride_day,
    seed_daily_stress,
    seed_metrics,
    seed_workout,
)

__all__ = [
    "RIDE_START",
    "USER_ID",
    "activity_payload",
    "make_activity",
    "make_record",
    "ride_day",
    "seed_daily_stress",
    "seed_metrics",
    "seed_workout",
]
