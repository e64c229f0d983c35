"""Pydantic request bodies for ingestion, verification and anchoring.

Range checks that belong to the correction boundary (stress, CTL/ATL/TSB)
are left to ``core.validation`` so the API and the services reject the
same values with the same error.
"""

from datetime import date
from typing import Any

from pydantic import BaseModel, Field

from training_load_server.models.workout import ActivityCategory, Source


class IngestBatchRequest(BaseModel):
    """A batch of normalized activities from one source.

    Activities are kept as raw objects so that one malformed entry is
    skipped by the pipeline instead of failing the whole request.
    """

    source: Source = Field(description="Pipeline that produced the batch")
    activities: list[dict[str, Any]] = Field(default_factory=list)
    recompute: bool = Field(default=True, description="Recompute the PMC after the batch")


class StressCorrectionRequest(BaseModel):
    """Athlete-entered stress score for one workout."""

    stress: float = Field(description="Ground-truth stress score")


class AnchorRequest(BaseModel):
    """Manual CTL/ATL for one day."""

    date: date
    ctl: float
    atl: float
    tsb: float | None = Field(
        default=None, description="Optional; must agree with CTL - ATL when given"
    )


class ComparisonRequest(BaseModel):
    """A direct (calculated, ground truth) comparison from outside the workout store."""

    category: ActivityCategory
    calculated: float = Field(ge=0)
    ground_truth: float = Field(ge=0)
    confidence: float = Field(default=1.0, ge=0, le=1)
    workout_id: str | None = None


class RecomputeRequest(BaseModel):
    """Recompute the PMC from a day (defaults to the earliest workout)."""

    start: date | None = None
    end: date | None = None


class LearningToggleRequest(BaseModel):
    enabled: bool
