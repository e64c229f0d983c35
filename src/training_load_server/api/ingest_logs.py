"""Ingestion audit trail endpoints."""

from typing import Annotated, Any

from litestar import Router, get
from litestar.params import Parameter
from litestar.status_codes import HTTP_200_OK
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from training_load_server.models.ingest_log import IngestLog


@get("/users/{user_id:str}/ingest-logs", status_code=HTTP_200_OK)
async def list_ingest_logs(
    user_id: str,
    session: AsyncSession,
    limit: Annotated[int, Parameter(query="limit", default=20, ge=1, le=200)] = 20,
    pending_only: Annotated[bool, Parameter(query="pending_only", default=False)] = False,
) -> list[dict[str, Any]]:
    """Most recent ingestion batches for a user.

    ``pending_only`` restricts to batches whose PMC recompute has not run.
    """
    stmt = select(IngestLog).where(IngestLog.user_id == user_id)
    if pending_only:
        stmt = stmt.where(
            IngestLog.recompute_from.is_not(None), IngestLog.pmc_recomputed.is_(False)
        )
    stmt = stmt.order_by(IngestLog.started_at.desc(), IngestLog.id.desc()).limit(limit)

    result = await session.execute(stmt)
    return [
        {
            "id": log.id,
            "jobId": log.job_id,
            "source": log.source,
            "status": log.status,
            "startedAt": log.started_at.isoformat() if log.started_at else None,
            "completedAt": log.completed_at.isoformat() if log.completed_at else None,
            "durationMs": log.duration_ms,
            "activitiesReceived": log.activities_received,
            "counts": log.counts,
            "errorType": log.error_type,
            "errorMessage": log.error_message,
            "errorDetails": log.error_details,
            "recomputeFrom": log.recompute_from.isoformat() if log.recompute_from else None,
            "pmcRecomputed": log.pmc_recomputed,
        }
        for log in result.scalars().all()
    ]


ingest_logs_router = Router(path="/", route_handlers=[list_ingest_logs], tags=["ingestion"])
