"""API routes."""

from litestar import Router

from training_load_server.api.calibration import calibration_router
from training_load_server.api.health import health_router
from training_load_server.api.ingest_logs import ingest_logs_router
from training_load_server.api.metrics import metrics_router
from training_load_server.api.workouts import workouts_router
from training_load_server.core.config import settings

# Versioned API routers, mounted under settings.api_prefix (/api/v1)
_v1_routers = [
    workouts_router,  # Ingestion, listing, confirm/correct
    metrics_router,  # PMC series, anchoring, recompute
    calibration_router,  # Scaling profiles and comparisons
    ingest_logs_router,  # Ingestion audit trail
]

api_v1_router = Router(path=settings.api_prefix, route_handlers=_v1_routers)

# Export: health (root), v1 (prefixed)
api_routers = [health_router, api_v1_router]

__all__ = ["api_routers"]
