"""Stress-score calibration endpoints."""

from typing import Annotated, Any

from litestar import Router, get, post
from litestar.exceptions import NotFoundException, ValidationException
from litestar.params import Parameter
from litestar.status_codes import HTTP_200_OK
from sqlalchemy.ext.asyncio import AsyncSession

from training_load_server.core.validation import InvalidCorrectionError
from training_load_server.models.workout import ActivityCategory
from training_load_server.schemas.corrections import ComparisonRequest, LearningToggleRequest
from training_load_server.services.calibration import GLOBAL_CATEGORY, CalibrationEngine


def _category(value: str) -> ActivityCategory:
    try:
        return ActivityCategory(value)
    except ValueError as e:
        raise NotFoundException(f"Unknown category: {value}") from e


@get("/users/{user_id:str}/calibration", status_code=HTTP_200_OK)
async def list_profiles(user_id: str, session: AsyncSession) -> list[dict[str, Any]]:
    """Scaling profile for every category."""
    profiles = await CalibrationEngine(session).profiles(user_id)
    return [profile.to_dict() for profile in profiles]


@get("/users/{user_id:str}/calibration/{category:str}", status_code=HTTP_200_OK)
async def get_profile(user_id: str, category: str, session: AsyncSession) -> dict[str, Any]:
    """Scaling profile for one category.

    ``appliedFactor`` is what the stress-score calculator should multiply
    by; it stays 1.0 until enough confident evidence has accumulated, in
    the category itself or across all of them (``factorSource``). The
    category ``all`` returns the user-wide profile.
    """
    engine = CalibrationEngine(session)
    if category == GLOBAL_CATEGORY:
        return (await engine.global_profile(user_id)).to_dict()
    profile = await engine.scaling_profile(user_id, _category(category))
    return profile.to_dict()


@get("/users/{user_id:str}/calibration/{category:str}/data-points", status_code=HTTP_200_OK)
async def list_data_points(
    user_id: str,
    category: str,
    session: AsyncSession,
    include_invalid: Annotated[bool, Parameter(query="include_invalid", default=False)] = False,
) -> list[dict[str, Any]]:
    points = await CalibrationEngine(session).data_points(user_id, _category(category).value)
    return [
        {"id": point.id, **point.to_dict()}
        for point in points
        if include_invalid or point.is_valid
    ]


@post("/users/{user_id:str}/calibration/comparisons", status_code=HTTP_200_OK)
async def record_comparison(
    user_id: str,
    data: ComparisonRequest,
    session: AsyncSession,
) -> dict[str, Any]:
    """Record a direct (calculated, ground truth) comparison."""
    engine = CalibrationEngine(session)
    try:
        profile = await engine.record_comparison(
            user_id,
            data.category,
            calculated=data.calculated,
            ground_truth=data.ground_truth,
            confidence=data.confidence,
            workout_id=data.workout_id,
        )
    except InvalidCorrectionError as e:
        raise ValidationException(str(e), extra=e.to_dict()) from e
    return profile.to_dict()


@post("/users/{user_id:str}/calibration/{category:str}/learning", status_code=HTTP_200_OK)
async def set_learning(
    user_id: str,
    category: str,
    data: LearningToggleRequest,
    session: AsyncSession,
) -> dict[str, Any]:
    """Enable or disable learning for one category."""
    engine = CalibrationEngine(session)
    profile = await engine.set_learning_enabled(user_id, _category(category), data.enabled)
    return profile.to_dict()


@post("/users/{user_id:str}/calibration/{category:str}/reset", status_code=HTTP_200_OK)
async def reset_profile(user_id: str, category: str, session: AsyncSession) -> dict[str, Any]:
    """Discard all evidence for one category."""
    profile = await CalibrationEngine(session).reset_profile(user_id, _category(category))
    return profile.to_dict()


@post(
    "/users/{user_id:str}/calibration/data-points/{point_id:int}/invalidate",
    status_code=HTTP_200_OK,
)
async def invalidate_data_point(
    user_id: str, point_id: int, session: AsyncSession
) -> dict[str, Any]:
    """Mark one data point invalid and rebuild its category's profile."""
    profile = await CalibrationEngine(session).invalidate_data_point(user_id, point_id)
    if profile is None:
        raise NotFoundException(f"Data point {point_id} not found")
    return profile.to_dict()


calibration_router = Router(
    path="/",
    route_handlers=[
        list_profiles,
        get_profile,
        list_data_points,
        record_comparison,
        set_learning,
        reset_profile,
        invalidate_data_point,
    ],
    tags=["calibration"],
)
