"""Cross-source workout matching.

Decides whether an inbound activity is a session we already have.

Distance-first matching:

    candidate ──> same calendar day? ──no──> skip record
                        │
                  already linked for this source? ──yes──> skip record
                        │
          both sides have distance? ──yes──> distance within 10% (same
                        │                    category) / 5% (different),
                        │                    duration within 25%
                        no
                        │
                  duration-only fallback: within 10%, category and
                  indoor flag must agree exactly

Surviving records are ranked: same category first, then the smallest
distance delta. The winner is accepted only if its confidence clears the
configured acceptance threshold; below that the result is an ambiguous
no-match and the candidate becomes a new record.
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

import structlog

from training_load_server.core.config import Settings, settings as default_settings
from training_load_server.core.dates import ensure_aware, local_day
from training_load_server.models.workout import WorkoutRecord
from training_load_server.schemas.activity import NormalizedActivity

logger = structlog.get_logger()


class MatchMode(str, Enum):
    """Which rule produced a match."""

    DISTANCE = "distance"
    DURATION = "duration"


class NoMatchReason(str, Enum):
    """Why a candidate was not matched."""

    NO_CANDIDATES = "no_candidates"
    MISSING_DISCRIMINATORS = "missing_discriminators"
    OUTSIDE_TOLERANCE = "outside_tolerance"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class MatchResult:
    """A matched existing record and how sure we are about it."""

    record: WorkoutRecord
    confidence: float
    mode: MatchMode
    same_category: bool
    distance_delta: float | None
    duration_delta: float | None

    def _sort_key(self) -> tuple[bool, float, float, object, str]:
        return (
            not self.same_category,
            self.distance_delta if self.distance_delta is not None else math.inf,
            self.duration_delta if self.duration_delta is not None else math.inf,
            ensure_aware(self.record.start_date),
            str(self.record.id),
        )


@dataclass(frozen=True)
class MatchDecision:
    """Outcome of matching one candidate.

    ``match`` is set only when a record was accepted. ``best`` keeps the
    top-ranked record even when it was rejected as ambiguous.
    """

    match: MatchResult | None
    reason: NoMatchReason | None = None
    best: MatchResult | None = None

    @property
    def is_match(self) -> bool:
        return self.match is not None

    @property
    def missing_discriminators(self) -> bool:
        return self.reason == NoMatchReason.MISSING_DISCRIMINATORS

    @property
    def ambiguous(self) -> bool:
        return self.reason == NoMatchReason.AMBIGUOUS


def relative_delta(value: float, reference: float) -> float:
    """Relative difference of ``value`` from ``reference``."""
    return abs(value - reference) / reference


class MatchingEngine:
    """Match inbound activities against existing workout records.

    Stateless apart from its thresholds; the same inputs always give the
    same answer.
    """

    def __init__(self, config: Settings | None = None) -> None:
        config = config or default_settings
        self.distance_tolerance_same = config.match_distance_tolerance_same_category
        self.distance_tolerance_cross = config.match_distance_tolerance_cross_category
        self.duration_tolerance = config.match_duration_tolerance
        self.fallback_duration_tolerance = config.match_fallback_duration_tolerance
        self.acceptance_threshold = config.match_acceptance_threshold
        self.timezone = config.athlete_timezone
        self.logger = logger.bind(service="matching")

    def match(
        self, candidate: NormalizedActivity, existing: Sequence[WorkoutRecord]
    ) -> MatchResult | None:
        """Return the accepted match for ``candidate``, or None."""
        return self.decide(candidate, existing).match

    def decide(
        self, candidate: NormalizedActivity, existing: Sequence[WorkoutRecord]
    ) -> MatchDecision:
        """Match ``candidate`` and explain the outcome."""
        if not candidate.has_distance and not candidate.has_duration:
            self.logger.warning(
                "Missing match discriminators",
                source=candidate.source.value,
                external_id=candidate.external_id,
            )
            return MatchDecision(match=None, reason=NoMatchReason.MISSING_DISCRIMINATORS)

        pool = self.same_day_unlinked(candidate, existing)
        if not pool:
            return MatchDecision(match=None, reason=NoMatchReason.NO_CANDIDATES)

        ranked = self.rank(candidate, pool)
        if not ranked:
            return MatchDecision(match=None, reason=NoMatchReason.OUTSIDE_TOLERANCE)

        best = ranked[0]
        if best.confidence < self.acceptance_threshold:
            self.logger.info(
                "Ambiguous match rejected",
                source=candidate.source.value,
                external_id=candidate.external_id,
                record_id=best.record.id,
                confidence=round(best.confidence, 3),
                threshold=self.acceptance_threshold,
            )
            return MatchDecision(match=None, reason=NoMatchReason.AMBIGUOUS, best=best)

        self.logger.debug(
            "Matched activity",
            source=candidate.source.value,
            external_id=candidate.external_id,
            record_id=best.record.id,
            mode=best.mode.value,
            confidence=round(best.confidence, 3),
        )
        return MatchDecision(match=best, best=best)

    def same_day_unlinked(
        self, candidate: NormalizedActivity, existing: Sequence[WorkoutRecord]
    ) -> list[WorkoutRecord]:
        """Records on the candidate's calendar day not yet linked for its source."""
        day = local_day(candidate.start_time, self.timezone)
        return [
            record
            for record in existing
            if local_day(record.start_date, self.timezone) == day
            and not record.has_link(candidate.source)
        ]

    def rank(
        self, candidate: NormalizedActivity, records: Sequence[WorkoutRecord]
    ) -> list[MatchResult]:
        """Score every record within tolerance and order by preference."""
        scored = [result for record in records if (result := self.score(candidate, record))]
        return sorted(scored, key=MatchResult._sort_key)

    def score(self, candidate: NormalizedActivity, record: WorkoutRecord) -> MatchResult | None:
        """Score one pair, or None if it falls outside tolerance."""
        same_category = record.category == candidate.category.value
        record_distance = record.distance_meters or 0
        if candidate.has_distance and record_distance > 0:
            return self._score_distance(candidate, record, same_category)
        return self._score_duration(candidate, record, same_category)

    def _score_distance(
        self, candidate: NormalizedActivity, record: WorkoutRecord, same_category: bool
    ) -> MatchResult | None:
        tolerance = self.distance_tolerance_same if same_category else self.distance_tolerance_cross
        distance_delta = relative_delta(record.distance_meters, candidate.distance_meters)
        if distance_delta > tolerance:
            return None

        duration_delta = None
        duration_term = 1.0
        if candidate.has_duration and (record.duration_seconds or 0) > 0:
            duration_delta = relative_delta(record.duration_seconds, candidate.duration_seconds)
            if duration_delta > self.duration_tolerance:
                return None
            duration_term = duration_delta / self.duration_tolerance

        confidence = (
            1.0
            - 0.4 * (distance_delta / tolerance)
            - 0.2 * duration_term
            - (0.0 if same_category else 0.1)
        )
        return MatchResult(
            record=record,
            confidence=max(0.0, min(1.0, confidence)),
            mode=MatchMode.DISTANCE,
            same_category=same_category,
            distance_delta=distance_delta,
            duration_delta=duration_delta,
        )

    def _score_duration(
        self, candidate: NormalizedActivity, record: WorkoutRecord, same_category: bool
    ) -> MatchResult | None:
        if not candidate.has_duration or (record.duration_seconds or 0) <= 0:
            return None
        if not same_category or bool(record.indoor) != candidate.indoor:
            return None
        duration_delta = relative_delta(record.duration_seconds, candidate.duration_seconds)
        if duration_delta > self.fallback_duration_tolerance:
            return None
        confidence = 0.9 - 0.4 * (duration_delta / self.fallback_duration_tolerance)
        return MatchResult(
            record=record,
            confidence=max(0.0, min(1.0, confidence)),
            mode=MatchMode.DURATION,
            same_category=True,
            distance_delta=None,
            duration_delta=duration_delta,
        )
