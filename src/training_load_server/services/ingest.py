"""Ingestion pipeline.

One batch of activities from one source flows through explicit stages:

    raw activities
        │
        ▼
    normalize ──(bounded queue)──▶ match ─▶ merge ─▶ persist
                                                       │
                                                       ▼
                                     aggregate (days whose stress changed)
                                                       │
                                                       ▼
                                     recompute PMC from the earliest such day

Each activity is one unit of work: it is matched and written under the
lock of its matching window and committed on its own. A malformed activity
is skipped and the batch carries on. Cancellation is checked between
activities, so everything committed before it stays valid; the recompute
it would have triggered is left pending for the scheduler.
"""

import asyncio
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from training_load_server.core.cancellation import CancelToken, OperationCancelledError
from training_load_server.core.clock import Clock, utc_now
from training_load_server.core.config import Settings, settings as default_settings
from training_load_server.core.dates import local_day
from training_load_server.core.locks import KeyedLockManager, lock_manager, record_window_key
from training_load_server.models.ingest_log import IngestErrorType, IngestLog, IngestStatus
from training_load_server.models.workout import Source, WorkoutLink, WorkoutRecord
from training_load_server.schemas.activity import NormalizedActivity
from training_load_server.services.ingest_error_handler import IngestErrorHandler
from training_load_server.services.matching import MatchDecision, MatchingEngine
from training_load_server.services.merge import MergePolicy, apply_merge
from training_load_server.services.metrics import PMCService, RecomputeFailedError, RecomputeResult
from training_load_server.transformers.activity import ActivityTransformer

logger = structlog.get_logger()

RawActivity = NormalizedActivity | Mapping[str, Any]

_END_OF_BATCH = None


class IngestOutcome(str, Enum):
    """What happened to one inbound activity."""

    CREATED = "created"
    MERGED = "merged"
    ALREADY_LINKED = "already_linked"
    FLAGGED = "flagged"
    SKIPPED = "skipped"


class ReviewReason(str, Enum):
    """Why a freshly inserted record was flagged for manual review."""

    MISSING_DISCRIMINATORS = "missing_discriminators"
    AMBIGUOUS_MATCH = "ambiguous_match"


@dataclass
class IngestResult:
    """Summary of one ingestion batch."""

    job_id: str
    user_id: str
    source: Source
    received: int = 0
    counts: dict[str, int] = field(
        default_factory=lambda: {outcome.value: 0 for outcome in IngestOutcome}
    )
    record_ids: list[str] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False
    recompute_from: date | None = None
    recompute: RecomputeResult | None = None
    status: str = IngestStatus.STARTED.value

    def count(self, outcome: IngestOutcome, record_id: str | None = None) -> None:
        self.counts[outcome.value] += 1
        if record_id is not None and record_id not in self.record_ids:
            self.record_ids.append(record_id)

    @property
    def processed(self) -> int:
        return sum(self.counts.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "userId": self.user_id,
            "source": self.source.value,
            "status": self.status,
            "received": self.received,
            "counts": dict(self.counts),
            "recordIds": list(self.record_ids),
            "errors": list(self.errors),
            "cancelled": self.cancelled,
            "recomputeFrom": self.recompute_from.isoformat() if self.recompute_from else None,
            "recompute": self.recompute.to_dict() if self.recompute else None,
        }


class IngestionPipeline:
    """Run batches of normalized activities into the workout store."""

    def __init__(
        self,
        session: AsyncSession,
        config: Settings | None = None,
        locks: KeyedLockManager | None = None,
        clock: Clock = utc_now,
        matching: MatchingEngine | None = None,
        merge: MergePolicy | None = None,
        pmc: PMCService | None = None,
        error_handler: IngestErrorHandler | None = None,
    ) -> None:
        self.session = session
        self.config = config or default_settings
        self.locks = locks or lock_manager
        self.clock = clock
        self.timezone = self.config.athlete_timezone
        self.matching = matching or MatchingEngine(self.config)
        self.merge = merge or MergePolicy(self.timezone)
        self.pmc = pmc or PMCService(session, self.config, self.locks, clock)
        self.error_handler = error_handler or IngestErrorHandler()
        self.logger = logger.bind(service="ingest")

    async def ingest(
        self,
        user_id: str,
        source: Source,
        activities: Iterable[RawActivity],
        cancel: CancelToken | None = None,
        job_id: str | None = None,
        recompute: bool = True,
    ) -> IngestResult:
        """Ingest one batch.

        Args:
            user_id: Athlete the activities belong to
            source: Pipeline the batch came from; every activity must carry it
            activities: NormalizedActivity values or raw mappings to validate
            cancel: Checked between activities
            job_id: Correlation id (generated if omitted)
            recompute: Run the PMC recompute the batch requires

        Returns:
            IngestResult with per-outcome counts and the IngestLog status
        """
        activities = list(activities)
        cancel = cancel or CancelToken()
        result = IngestResult(
            job_id=job_id or str(uuid.uuid4()),
            user_id=user_id,
            source=source,
            received=len(activities),
        )
        log = IngestLog(
            user_id=user_id,
            job_id=result.job_id,
            source=source.value,
            started_at=self.clock(),
            status=IngestStatus.STARTED.value,
            activities_received=result.received,
            pmc_recomputed=False,
        )
        self.session.add(log)
        await self.session.commit()

        self.logger.info(
            "Starting ingestion",
            user_id=user_id,
            source=source.value,
            job_id=result.job_id,
            activities=result.received,
        )

        try:
            await self._run_stages(user_id, source, activities, log, result, cancel)
        except Exception as e:
            await self.session.rollback()
            await self.session.refresh(log)
            error = self.error_handler.classify(e, context={"job_id": result.job_id})
            log.complete_failed(
                error.error_type,
                error.message,
                counts=dict(result.counts),
                details=[error.to_log_dict()],
                now=self.clock(),
            )
            result.status = log.status
            result.recompute_from = log.recompute_from
            await self.session.commit()
            raise

        result.recompute_from = log.recompute_from
        if recompute and not result.cancelled and log.recompute_from is not None:
            await self._recompute(user_id, log, result, cancel)

        self._finish(log, result)
        await self.session.commit()

        self.logger.info(
            "Ingestion complete",
            user_id=user_id,
            source=source.value,
            job_id=result.job_id,
            status=result.status,
            **result.counts,
        )
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run_stages(
        self,
        user_id: str,
        source: Source,
        activities: list[RawActivity],
        log: IngestLog,
        result: IngestResult,
        cancel: CancelToken,
    ) -> None:
        queue: asyncio.Queue[tuple[int, NormalizedActivity] | None] = asyncio.Queue(
            maxsize=max(1, self.config.ingest_queue_size)
        )
        producer = asyncio.create_task(
            self._normalize_stage(source, activities, queue, result, cancel)
        )
        try:
            await self._persist_stage(user_id, queue, log, result, cancel)
        finally:
            if not producer.done():
                producer.cancel()
            # Re-raises a failure from the normalize stage
            try:
                await producer
            except asyncio.CancelledError:
                pass

    async def _normalize_stage(
        self,
        source: Source,
        activities: list[RawActivity],
        queue: asyncio.Queue[tuple[int, NormalizedActivity] | None],
        result: IngestResult,
        cancel: CancelToken,
    ) -> None:
        failure: Exception | None = None
        try:
            for index, raw in enumerate(activities):
                if cancel.cancelled:
                    break
                try:
                    activity = self.normalize(raw, source)
                except Exception as e:
                    error = self.error_handler.classify(
                        e, context={"index": index, "external_id": _external_id(raw)}
                    )
                    if not error.skip_activity:
                        raise
                    result.errors.append(error.to_log_dict())
                    result.count(IngestOutcome.SKIPPED)
                    continue
                await queue.put((index, activity))
        except Exception as e:
            failure = e
        # Not reached when the persist stage has stopped and cancelled this task
        await queue.put(_END_OF_BATCH)
        if failure is not None:
            raise failure

    def normalize(self, raw: RawActivity, source: Source) -> NormalizedActivity:
        """Validate one raw activity against the batch source.

        Raises:
            pydantic.ValidationError: If the activity is malformed
            ValueError: If it belongs to another source
        """
        activity = (
            raw if isinstance(raw, NormalizedActivity) else NormalizedActivity.model_validate(raw)
        )
        if activity.source != source:
            raise ValueError(
                f"Activity from {activity.source.value} in a {source.value} batch"
            )
        return activity

    async def _persist_stage(
        self,
        user_id: str,
        queue: asyncio.Queue[tuple[int, NormalizedActivity] | None],
        log: IngestLog,
        result: IngestResult,
        cancel: CancelToken,
    ) -> None:
        while True:
            item = await queue.get()
            if item is _END_OF_BATCH:
                break
            index, activity = item
            try:
                cancel.raise_if_cancelled()
                outcome, record_id = await self.process(user_id, activity, log)
            except OperationCancelledError as e:
                result.cancelled = True
                self.error_handler.classify(e, context={"job_id": result.job_id})
                break
            except Exception as e:
                await self.session.rollback()
                await self.session.refresh(log)
                error = self.error_handler.classify(
                    e, context={"index": index, "external_id": activity.external_id}
                )
                if not error.skip_activity:
                    raise
                result.errors.append(error.to_log_dict())
                result.count(IngestOutcome.SKIPPED)
                continue
            result.count(outcome, record_id)

        if cancel.cancelled:
            result.cancelled = True

    async def process(
        self, user_id: str, activity: NormalizedActivity, log: IngestLog | None = None
    ) -> tuple[IngestOutcome, str]:
        """Match, merge or insert one activity and commit it.

        Returns:
            (outcome, id of the record the activity ended up on)
        """
        day = local_day(activity.start_time, self.timezone)
        async with self.locks.acquire(record_window_key(user_id, day)):
            linked = await self.find_linked(user_id, activity.source, activity.external_id)
            if linked is not None:
                self.logger.debug(
                    "Activity already linked",
                    source=activity.source.value,
                    external_id=activity.external_id,
                    record_id=linked.id,
                )
                return IngestOutcome.ALREADY_LINKED, linked.id

            existing = await self.records_on_day(user_id, day)
            decision = self.matching.decide(activity, existing)
            if decision.is_match:
                record = self._merge(decision, activity, log)
                outcome = IngestOutcome.MERGED
            else:
                record = self._insert(user_id, decision, activity, log)
                outcome = IngestOutcome.FLAGGED if record.needs_review else IngestOutcome.CREATED
            await self.session.commit()
        return outcome, record.id

    def _merge(
        self, decision: MatchDecision, activity: NormalizedActivity, log: IngestLog | None
    ) -> WorkoutRecord:
        record = decision.match.record
        previous_day = record.activity_date
        result = self.merge.merge(record, activity, activity.source)
        apply_merge(record, result)

        if log is not None and record.stress > 0 and record.activity_date != previous_day:
            # The stress moved between days
            log.note_stress_change(previous_day)
            log.note_stress_change(record.activity_date)

        self.logger.info(
            "Merged activity into existing workout",
            record_id=record.id,
            source=activity.source.value,
            external_id=activity.external_id,
            confidence=round(decision.match.confidence, 3),
            mode=decision.match.mode.value,
            changed=result.changed_fields,
        )
        return record

    def _insert(
        self,
        user_id: str,
        decision: MatchDecision,
        activity: NormalizedActivity,
        log: IngestLog | None,
    ) -> WorkoutRecord:
        record = WorkoutRecord(**ActivityTransformer.transform(activity, user_id, self.timezone))
        record.links.append(
            WorkoutLink(
                user_id=user_id,
                source=activity.source.value,
                external_id=activity.external_id,
            )
        )
        if decision.missing_discriminators:
            record.needs_review = True
            record.review_reason = ReviewReason.MISSING_DISCRIMINATORS.value
        elif decision.ambiguous:
            record.needs_review = True
            record.review_reason = ReviewReason.AMBIGUOUS_MATCH.value
        self.session.add(record)

        if log is not None and record.stress > 0:
            log.note_stress_change(record.activity_date)

        self.logger.info(
            "Created workout",
            source=activity.source.value,
            external_id=activity.external_id,
            activity_date=record.activity_date.isoformat(),
            needs_review=record.needs_review,
            reason=decision.reason.value if decision.reason else None,
        )
        return record

    async def _recompute(
        self, user_id: str, log: IngestLog, result: IngestResult, cancel: CancelToken
    ) -> None:
        try:
            result.recompute = await self.pmc.recompute_from(
                user_id, log.recompute_from, cancel=cancel
            )
        except RecomputeFailedError as e:
            await self.session.refresh(log)
            error = self.error_handler.classify(e, context={"job_id": result.job_id})
            result.errors.append(error.to_log_dict())
            log.error_type = IngestErrorType.RECOMPUTE_FAILED.value
            log.error_message = error.message
            return
        if result.recompute.cancelled:
            result.cancelled = True
        else:
            log.mark_recompute_complete()

    def _finish(self, log: IngestLog, result: IngestResult) -> None:
        counts = dict(result.counts)
        now = self.clock()
        skipped = [
            error
            for error in result.errors
            if error.get("error_type") == IngestErrorType.MALFORMED_INPUT.value
        ]
        recompute_error = (log.error_type, log.error_message)
        if result.cancelled:
            log.complete_cancelled(counts, "ingestion cancelled", now=now)
        elif skipped:
            log.complete_partial(counts, skipped, now=now)
        else:
            log.complete_success(counts, now=now)
        if recompute_error[0] == IngestErrorType.RECOMPUTE_FAILED.value and not result.cancelled:
            log.error_type, log.error_message = recompute_error
        result.status = log.status

    # ------------------------------------------------------------------
    # Store queries
    # ------------------------------------------------------------------

    async def find_linked(
        self, user_id: str, source: Source, external_id: str
    ) -> WorkoutRecord | None:
        """Record already carrying this source's identifier, if any."""
        stmt = (
            select(WorkoutRecord)
            .join(WorkoutLink, WorkoutLink.workout_id == WorkoutRecord.id)
            .where(
                WorkoutLink.user_id == user_id,
                WorkoutLink.source == source.value,
                WorkoutLink.external_id == external_id,
            )
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def records_on_day(self, user_id: str, day: date) -> list[WorkoutRecord]:
        """Records in the matching window of ``day``, in a stable order."""
        stmt = (
            select(WorkoutRecord)
            .where(WorkoutRecord.user_id == user_id, WorkoutRecord.activity_date == day)
            .order_by(WorkoutRecord.start_date, WorkoutRecord.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


def _external_id(raw: RawActivity) -> str | None:
    if isinstance(raw, NormalizedActivity):
        return raw.external_id
    value = raw.get("external_id") if isinstance(raw, Mapping) else None
    return str(value) if value is not None else None
