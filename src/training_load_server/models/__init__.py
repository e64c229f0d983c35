"""Database models."""

from training_load_server.models.base import Base
from training_load_server.models.calibration import (
    CalibrationDataPoint,
    CalibrationSignal,
    ScalingProfile,
)
from training_load_server.models.daily_metrics import DailyMetrics, MetricProvenance
from training_load_server.models.ingest_log import IngestErrorType, IngestLog, IngestStatus
from training_load_server.models.workout import (
    ActivityCategory,
    Source,
    StressScoreType,
    VerificationStatus,
    WorkoutLink,
    WorkoutRecord,
)

__all__ = [
    "ActivityCategory",
    "Base",
    "CalibrationDataPoint",
    "CalibrationSignal",
    "DailyMetrics",
    "IngestErrorType",
    "IngestLog",
    "IngestStatus",
    "MetricProvenance",
    "ScalingProfile",
    "Source",
    "StressScoreType",
    "VerificationStatus",
    "WorkoutLink",
    "WorkoutRecord",
]
