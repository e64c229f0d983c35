"""Training load server: deduplicated workouts, PMC metrics and stress-score calibration."""

__version__ = "0.1.0"
