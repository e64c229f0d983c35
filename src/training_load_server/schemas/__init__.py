"""Pydantic schemas for inbound activities and API request bodies."""

from training_load_server.schemas.activity import NormalizedActivity
from training_load_server.schemas.corrections import (
    AnchorRequest,
    ComparisonRequest,
    IngestBatchRequest,
    LearningToggleRequest,
    RecomputeRequest,
    StressCorrectionRequest,
)

__all__ = [
    "AnchorRequest",
    "ComparisonRequest",
    "IngestBatchRequest",
    "LearningToggleRequest",
    "NormalizedActivity",
    "RecomputeRequest",
    "StressCorrectionRequest",
]
