"""Error classification for ingestion batches.

Each activity in a batch is processed on its own, so most failures are
local to one activity and the batch carries on. This module decides what
kind of failure an exception represents and whether the batch can
continue past it.

Error Classification:

    SKIP ACTIVITY (batch continues):
    - MALFORMED_INPUT: Activity failed validation (missing start time,
      negative duration, bad polyline, unknown enum value)

    ABORT BATCH (activities already committed stay committed):
    - DATABASE_ERROR: Store read/write failed
    - CANCELLED: Cancellation was requested
    - INTERNAL_ERROR: Unexpected internal error

    FOLLOW-UP:
    - RECOMPUTE_FAILED: Records were written but the PMC pass failed; the
      batch stays marked as owing a recompute and the scheduler retries it
"""

from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from training_load_server.core.cancellation import OperationCancelledError
from training_load_server.models.ingest_log import IngestErrorType
from training_load_server.services.metrics import RecomputeFailedError

logger = structlog.get_logger()


@dataclass
class IngestError:
    """Structured ingestion error.

    Attributes:
        error_type: Categorized error type
        message: Human-readable error message
        details: Additional error context as dict
        skip_activity: Whether the batch can continue with the next activity
        original_exception: The exception that caused this error
    """

    error_type: IngestErrorType
    message: str
    details: dict[str, Any]
    skip_activity: bool
    original_exception: Exception | None = None

    def to_log_dict(self) -> dict[str, Any]:
        """Convert to dict for structured logging and IngestLog.error_details."""
        return {
            "error_type": self.error_type.value,
            "message": self.message,
            "skip_activity": self.skip_activity,
            **self.details,
        }


class IngestErrorHandler:
    """Classifies exceptions raised while ingesting a batch.

    Usage:
        handler = IngestErrorHandler()

        try:
            activity = NormalizedActivity.model_validate(raw)
        except Exception as e:
            error = handler.classify(e, context={"index": index})
            if not error.skip_activity:
                raise
            skipped.append(error.to_log_dict())
    """

    def __init__(self) -> None:
        self.logger = logger.bind(component="ingest_error_handler")

    def classify(
        self,
        exception: Exception,
        context: dict[str, Any] | None = None,
    ) -> IngestError:
        """Classify an exception into an IngestError.

        Args:
            exception: The exception to classify
            context: Additional context (user_id, external_id, index, ...)

        Returns:
            IngestError with classification
        """
        context = context or {}

        if isinstance(exception, OperationCancelledError):
            return self._handle_cancelled(exception, context)
        if isinstance(exception, RecomputeFailedError):
            return self._handle_recompute_failed(exception, context)
        if isinstance(exception, SQLAlchemyError):
            return self._handle_database_error(exception, context)
        if isinstance(exception, ValidationError):
            return self._handle_validation_error(exception, context)
        if isinstance(exception, (ValueError, KeyError, TypeError)):
            return self._handle_malformed(exception, context)
        return self._handle_unknown_error(exception, context)

    def _handle_validation_error(
        self,
        exception: ValidationError,
        context: dict[str, Any],
    ) -> IngestError:
        """Handle pydantic validation failures on a raw activity."""
        fields = [".".join(str(part) for part in err["loc"]) for err in exception.errors()]
        self.logger.warning("Malformed activity skipped", fields=fields, **context)

        return IngestError(
            error_type=IngestErrorType.MALFORMED_INPUT,
            message=f"Activity failed validation: {', '.join(fields) or 'unknown field'}",
            details={
                "fields": fields,
                "error": str(exception)[:500],
                **context,
            },
            skip_activity=True,
            original_exception=exception,
        )

    def _handle_malformed(
        self,
        exception: ValueError | KeyError | TypeError,
        context: dict[str, Any],
    ) -> IngestError:
        self.logger.warning(
            "Malformed activity skipped",
            error_type=type(exception).__name__,
            error=str(exception),
            **context,
        )

        return IngestError(
            error_type=IngestErrorType.MALFORMED_INPUT,
            message=f"Activity could not be read: {exception}",
            details={
                "exception": type(exception).__name__,
                "error": str(exception)[:500],
                **context,
            },
            skip_activity=True,
            original_exception=exception,
        )

    def _handle_database_error(
        self,
        exception: SQLAlchemyError,
        context: dict[str, Any],
    ) -> IngestError:
        self.logger.error("Database error during ingestion", error=str(exception), **context)

        return IngestError(
            error_type=IngestErrorType.DATABASE_ERROR,
            message=f"Database error: {exception}",
            details={
                "exception": type(exception).__name__,
                "error": str(exception)[:500],
                **context,
            },
            skip_activity=False,
            original_exception=exception,
        )

    def _handle_recompute_failed(
        self,
        exception: RecomputeFailedError,
        context: dict[str, Any],
    ) -> IngestError:
        self.logger.error(
            "PMC recompute after ingestion failed",
            failed_day=exception.day.isoformat(),
            last_committed=exception.last_committed.isoformat()
            if exception.last_committed
            else None,
            **context,
        )

        return IngestError(
            error_type=IngestErrorType.RECOMPUTE_FAILED,
            message=str(exception),
            details={
                "failed_day": exception.day.isoformat(),
                **context,
            },
            skip_activity=False,
            original_exception=exception,
        )

    def _handle_cancelled(
        self,
        exception: OperationCancelledError,
        context: dict[str, Any],
    ) -> IngestError:
        self.logger.info("Ingestion cancelled", reason=str(exception), **context)

        return IngestError(
            error_type=IngestErrorType.CANCELLED,
            message=str(exception) or "cancelled",
            details=dict(context),
            skip_activity=False,
            original_exception=exception,
        )

    def _handle_unknown_error(
        self,
        exception: Exception,
        context: dict[str, Any],
    ) -> IngestError:
        """Handle unknown/unexpected errors."""
        self.logger.exception(
            "Unexpected ingestion error",
            error_type=type(exception).__name__,
            error=str(exception),
            **context,
        )

        return IngestError(
            error_type=IngestErrorType.INTERNAL_ERROR,
            message=f"Unexpected error: {type(exception).__name__}: {exception}",
            details={
                "exception": type(exception).__name__,
                "error": str(exception)[:500],
                **context,
            },
            skip_activity=False,
            original_exception=exception,
        )
