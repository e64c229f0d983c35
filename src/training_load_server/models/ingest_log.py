"""Audit trail of ingestion batches.

Every batch pushed through the ingestion pipeline, from any source, gets
one row here: what was created, merged or skipped, what went wrong, and
whether the PMC recompute that the batch required actually ran. The
scheduler picks up batches whose recompute is still pending.
"""

from datetime import UTC, date, datetime
from enum import Enum

from sqlalchemy import JSON, Boolean, Date, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from training_load_server.models.base import Base, utcnow


class IngestStatus(str, Enum):
    """Status of an ingestion batch.

    Attributes:
        STARTED: Batch has begun but not completed
        SUCCESS: Every activity was created, merged or recognised
        PARTIAL: Some activities were skipped as malformed
        FAILED: Batch aborted
        CANCELLED: Batch was cancelled between activities
    """

    STARTED = "started"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class IngestErrorType(str, Enum):
    """Categorized ingestion error types.

    Attributes:
        MALFORMED_INPUT: Activity failed validation; skipped
        DATABASE_ERROR: Store read/write failed
        RECOMPUTE_FAILED: Records were written but the PMC pass failed
        CANCELLED: Operation was cancelled
        INTERNAL_ERROR: Unexpected internal error
    """

    MALFORMED_INPUT = "malformed_input"
    DATABASE_ERROR = "database_error"
    RECOMPUTE_FAILED = "recompute_failed"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


class IngestLog(Base):
    """One ingestion batch.

    Example queries:
        # Batches that still owe a PMC recompute
        SELECT user_id, MIN(recompute_from) FROM ingest_logs
        WHERE recompute_from IS NOT NULL AND pmc_recomputed = false
        GROUP BY user_id;

    Attributes:
        counts: Outcome counts keyed by created/merged/already_linked/flagged/skipped
        recompute_from: Earliest day whose stress total changed
        pmc_recomputed: Whether the recompute for this batch has run
    """

    __tablename__ = "ingest_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), index=True)
    job_id: Mapped[str] = mapped_column(String(36), index=True)
    source: Mapped[str] = mapped_column(String(32))

    # Timing
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=IngestStatus.STARTED.value, index=True)

    # Errors
    error_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[list[dict[str, object]] | None] = mapped_column(JSON, nullable=True)

    # Results
    activities_received: Mapped[int] = mapped_column(Integer, default=0)
    counts: Mapped[dict[str, int] | None] = mapped_column(JSON, nullable=True)

    # PMC follow-up
    recompute_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    pmc_recomputed: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        Index("ix_ingest_logs_user_started", "user_id", "started_at"),
        Index("ix_ingest_logs_pending", "pmc_recomputed", "recompute_from"),
    )

    def __repr__(self) -> str:
        return (
            f"<IngestLog(id={self.id}, user_id='{self.user_id}', "
            f"source='{self.source}', status='{self.status}')>"
        )

    @property
    def is_complete(self) -> bool:
        return self.status != IngestStatus.STARTED.value

    @property
    def needs_recompute(self) -> bool:
        return self.recompute_from is not None and not self.pmc_recomputed

    def _finish(self, status: IngestStatus, now: datetime | None = None) -> None:
        now = now or datetime.now(UTC)
        started = self.started_at or now
        if started.tzinfo is None:
            started = started.replace(tzinfo=UTC)
        self.completed_at = now
        self.duration_ms = max(0, int((now - started).total_seconds() * 1000))
        self.status = status.value

    def complete_success(self, counts: dict[str, int], now: datetime | None = None) -> None:
        """Mark batch as completed with every activity accounted for."""
        self._finish(IngestStatus.SUCCESS, now)
        self.counts = counts

    def complete_partial(
        self,
        counts: dict[str, int],
        errors: list[dict[str, object]],
        now: datetime | None = None,
    ) -> None:
        """Mark batch as completed with some activities skipped.

        Args:
            counts: Outcome counts
            errors: One log dict per skipped activity
        """
        self._finish(IngestStatus.PARTIAL, now)
        self.counts = counts
        self.error_type = IngestErrorType.MALFORMED_INPUT.value
        self.error_message = f"{len(errors)} activities skipped"
        self.error_details = errors

    def complete_failed(
        self,
        error_type: IngestErrorType,
        message: str,
        counts: dict[str, int] | None = None,
        details: list[dict[str, object]] | None = None,
        now: datetime | None = None,
    ) -> None:
        """Mark batch as failed."""
        self._finish(IngestStatus.FAILED, now)
        self.error_type = error_type.value
        self.error_message = message
        self.error_details = details
        self.counts = counts

    def complete_cancelled(
        self, counts: dict[str, int], reason: str, now: datetime | None = None
    ) -> None:
        """Mark batch as cancelled; activities processed so far stay committed."""
        self._finish(IngestStatus.CANCELLED, now)
        self.counts = counts
        self.error_type = IngestErrorType.CANCELLED.value
        self.error_message = reason

    def note_stress_change(self, day: date) -> None:
        """Remember the earliest day whose stress total this batch changed."""
        if self.recompute_from is None or day < self.recompute_from:
            self.recompute_from = day
            self.pmc_recomputed = False

    def mark_recompute_complete(self) -> None:
        self.pmc_recomputed = True
