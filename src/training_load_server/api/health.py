"""Health check endpoint."""

from litestar import Router, get
from litestar.status_codes import HTTP_200_OK

from training_load_server import __version__
from training_load_server.services.scheduler import get_scheduler


@get("/health", status_code=HTTP_200_OK, sync_to_thread=False)
def health_check() -> dict[str, object]:
    """Health check endpoint.

    Returns:
        Status, version and roll-forward scheduler state
    """
    scheduler = get_scheduler()
    return {
        "status": "ok",
        "version": __version__,
        "scheduler": scheduler.get_status() if scheduler else None,
    }


health_router = Router(path="/", route_handlers=[health_check])
