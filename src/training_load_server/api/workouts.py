"""Workout ingestion and verification endpoints."""

from datetime import date, timedelta
from typing import Annotated, Any

from litestar import Router, get, post
from litestar.exceptions import NotFoundException, ValidationException
from litestar.params import Parameter
from litestar.status_codes import HTTP_200_OK
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from training_load_server.core.validation import InvalidCorrectionError
from training_load_server.models.workout import ActivityCategory, WorkoutRecord
from training_load_server.schemas.corrections import IngestBatchRequest, StressCorrectionRequest
from training_load_server.services.ingest import IngestionPipeline
from training_load_server.services.metrics import PMCService
from training_load_server.services.verification import VerificationService


@post("/users/{user_id:str}/activities/ingest", status_code=HTTP_200_OK)
async def ingest_activities(
    user_id: str,
    data: IngestBatchRequest,
    session: AsyncSession,
) -> dict[str, Any]:
    """Ingest a batch of normalized activities from one source.

    Malformed activities are skipped and reported in ``errors``; the rest
    of the batch is still processed.

    Example:
        POST /api/v1/users/athlete-1/activities/ingest
        {"source": "device_sync", "activities": [{...}, {...}]}
    """
    pipeline = IngestionPipeline(session)
    result = await pipeline.ingest(
        user_id, data.source, data.activities, recompute=data.recompute
    )
    return result.to_dict()


@get("/users/{user_id:str}/workouts", status_code=HTTP_200_OK)
async def list_workouts(
    user_id: str,
    session: AsyncSession,
    start: Annotated[date | None, Parameter(query="start")] = None,
    end: Annotated[date | None, Parameter(query="end")] = None,
    category: Annotated[str | None, Parameter(query="category")] = None,
    needs_review: Annotated[bool | None, Parameter(query="needs_review")] = None,
) -> list[dict[str, Any]]:
    """List workouts by calendar day range, newest first.

    Defaults to the last 30 days.
    """
    end = end or PMCService(session).today()
    start = start or end - timedelta(days=30)

    stmt = select(WorkoutRecord).where(
        WorkoutRecord.user_id == user_id,
        WorkoutRecord.activity_date >= start,
        WorkoutRecord.activity_date <= end,
    )
    if category:
        try:
            stmt = stmt.where(WorkoutRecord.category == ActivityCategory(category).value)
        except ValueError as e:
            raise ValidationException(f"Unknown category: {category}") from e
    if needs_review is not None:
        stmt = stmt.where(WorkoutRecord.needs_review.is_(needs_review))
    stmt = stmt.order_by(WorkoutRecord.start_date.desc(), WorkoutRecord.id)

    result = await session.execute(stmt)
    return [record.to_dict() for record in result.scalars().all()]


@get("/users/{user_id:str}/workouts/{workout_id:str}", status_code=HTTP_200_OK)
async def get_workout(user_id: str, workout_id: str, session: AsyncSession) -> dict[str, Any]:
    workout = await VerificationService(session).get_workout(user_id, workout_id)
    if workout is None:
        raise NotFoundException(f"Workout {workout_id} not found")
    return workout.to_dict()


@post("/users/{user_id:str}/workouts/{workout_id:str}/confirm", status_code=HTTP_200_OK)
async def confirm_workout(
    user_id: str,
    workout_id: str,
    session: AsyncSession,
) -> dict[str, Any]:
    """Confirm a workout's stress score as correct."""
    result = await VerificationService(session).confirm(user_id, workout_id)
    if result is None:
        raise NotFoundException(f"Workout {workout_id} not found")
    return result.to_dict()


@post("/users/{user_id:str}/workouts/{workout_id:str}/correct", status_code=HTTP_200_OK)
async def correct_workout(
    user_id: str,
    workout_id: str,
    data: StressCorrectionRequest,
    session: AsyncSession,
) -> dict[str, Any]:
    """Replace a workout's stress score with the athlete's value.

    The PMC is recomputed from the workout's day.
    """
    try:
        result = await VerificationService(session).correct(user_id, workout_id, data.stress)
    except InvalidCorrectionError as e:
        raise ValidationException(str(e), extra=e.to_dict()) from e
    if result is None:
        raise NotFoundException(f"Workout {workout_id} not found")
    return result.to_dict()


workouts_router = Router(
    path="/",
    route_handlers=[
        ingest_activities,
        list_workouts,
        get_workout,
        confirm_workout,
        correct_workout,
    ],
    tags=["workouts"],
)
