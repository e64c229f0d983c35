"""Performance Management Chart endpoints."""

from datetime import date, timedelta
from typing import Annotated, Any

from litestar import Router, get, post
from litestar.exceptions import NotFoundException, ValidationException
from litestar.params import Parameter
from litestar.status_codes import HTTP_200_OK
from sqlalchemy.ext.asyncio import AsyncSession

from training_load_server.core.validation import InvalidCorrectionError
from training_load_server.models.daily_metrics import DailyMetrics, MetricProvenance
from training_load_server.schemas.corrections import AnchorRequest, RecomputeRequest
from training_load_server.services.aggregation import DailyAggregator
from training_load_server.services.metrics import PMCService
from training_load_server.services.pmc import PMCPoint, monotony, strain
from training_load_server.services.verification import VerificationService


def _point(row: DailyMetrics) -> PMCPoint:
    return PMCPoint(row.date, row.total_stress, row.ctl, row.atl, MetricProvenance(row.provenance))


def _metrics_dict(row: DailyMetrics) -> dict[str, Any]:
    point = _point(row)
    zone = point.risk_zone
    return {
        **row.to_dict(),
        "acuteChronicRatio": point.acute_chronic_ratio,
        "riskZone": zone.value if zone else None,
        "form": point.form.value,
    }


@get("/users/{user_id:str}/metrics", status_code=HTTP_200_OK)
async def get_metrics(
    user_id: str,
    session: AsyncSession,
    start: Annotated[date | None, Parameter(query="start")] = None,
    end: Annotated[date | None, Parameter(query="end")] = None,
) -> list[dict[str, Any]]:
    """Daily CTL/ATL/TSB for a date range (default: last 90 days)."""
    service = PMCService(session)
    end = end or service.today()
    start = start or end - timedelta(days=90)
    if start > end:
        raise ValidationException("start must not be after end")
    return [_metrics_dict(row) for row in await service.get_metrics(user_id, start, end)]


@get("/users/{user_id:str}/metrics/projection", status_code=HTTP_200_OK)
async def get_projection(
    user_id: str,
    session: AsyncSession,
    days: Annotated[int, Parameter(query="days", default=14, ge=1, le=90)] = 14,
    target_tsb: Annotated[float, Parameter(query="target_tsb", default=5.0)] = 5.0,
) -> dict[str, Any]:
    """Project the chart forward assuming rest days.

    Also reports how many rest days it takes to reach ``target_tsb``,
    the constant daily stress that lands on it after ``days`` days, and the
    monotony and strain of the last seven days.
    """
    service = PMCService(session)
    latest = await service.latest(user_id)
    if latest is None:
        raise NotFoundException(f"No metrics for user {user_id}")
    last = _point(latest)
    projected = service.calculator.project(last, [], days)
    week = await service.get_metrics(user_id, last.day - timedelta(days=6), last.day)
    week_stress = [row.total_stress for row in week]
    return {
        "from": last.day.isoformat(),
        "daysUntilForm": service.calculator.days_until_form(last, target_tsb),
        "stressToReachTarget": service.calculator.stress_to_reach_tsb(last, target_tsb, days),
        "monotony": monotony(week_stress),
        "strain": strain(week_stress),
        "projection": [
            {
                "date": point.day.isoformat(),
                "ctl": point.ctl,
                "atl": point.atl,
                "tsb": point.tsb,
                "form": point.form.value,
            }
            for point in projected
        ],
    }


@post("/users/{user_id:str}/metrics/anchor", status_code=HTTP_200_OK)
async def anchor_metrics(
    user_id: str,
    data: AnchorRequest,
    session: AsyncSession,
) -> dict[str, Any]:
    """Pin a day's CTL/ATL; later days are recomputed, earlier days are untouched.

    The difference from the computed values is fed to calibration as
    evidence about the categories trained before that day.
    """
    service = VerificationService(session)
    try:
        outcome = await service.anchor_metrics(user_id, data.date, data.ctl, data.atl, data.tsb)
    except InvalidCorrectionError as e:
        raise ValidationException(str(e), extra=e.to_dict()) from e
    return outcome.to_dict()


@post("/users/{user_id:str}/metrics/anchor/{day:date}/clear", status_code=HTTP_200_OK)
async def clear_anchor(user_id: str, day: date, session: AsyncSession) -> dict[str, Any]:
    """Unpin an anchored day and recompute from it."""
    result = await PMCService(session).clear_anchor(user_id, day)
    if result is None:
        raise NotFoundException(f"No anchor on {day.isoformat()}")
    return result.to_dict()


@post("/users/{user_id:str}/metrics/recompute", status_code=HTTP_200_OK)
async def recompute_metrics(
    user_id: str,
    data: RecomputeRequest,
    session: AsyncSession,
) -> dict[str, Any]:
    """Recompute the chart from ``start`` (default: earliest workout)."""
    service = PMCService(session)
    start = data.start or await DailyAggregator(session).earliest_activity_date(user_id)
    if start is None:
        raise NotFoundException(f"No workouts for user {user_id}")
    result = await service.recompute_from(user_id, start, data.end)
    return result.to_dict()


metrics_router = Router(
    path="/",
    route_handlers=[get_metrics, get_projection, anchor_metrics, clear_anchor, recompute_metrics],
    tags=["metrics"],
)
