"""CLI entry point for training-load-server."""

import asyncio
from datetime import date, datetime

import typer
import uvicorn

from training_load_server import __version__
from training_load_server.core.config import settings

app = typer.Typer(
    name="training-load-server",
    help="Workout deduplication, training load and stress-score calibration server",
    no_args_is_help=True,
)


@app.command()
def serve(
    host: str = typer.Option(None, help="Host to bind to (overrides config)"),
    port: int = typer.Option(None, help="Port to bind to (overrides config)"),
    reload: bool = typer.Option(False, help="Enable auto-reload for development"),
) -> None:
    """Start the API server.

    Example:
        training-load-server serve
        training-load-server serve --host 0.0.0.0 --port 8080 --reload
    """
    uvicorn.run(
        "training_load_server.app:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"training-load-server v{__version__}")


@app.command()
def recompute(
    user: str = typer.Option(..., "--user", help="User whose chart to recompute"),
    start: datetime = typer.Option(
        None, "--start", formats=["%Y-%m-%d"], help="First day (default: earliest workout)"
    ),
) -> None:
    """Recompute a user's PMC from a day through today.

    Example:
        training-load-server recompute --user athlete-1 --start 2024-01-01
    """
    result = asyncio.run(_recompute(user, start.date() if start else None))
    if result is None:
        typer.echo(f"No workouts for {user}")
        raise typer.Exit(code=1)
    typer.echo(
        f"Recomputed {result.days_written} days for {user} "
        f"({result.start.isoformat()} to {result.end.isoformat()})"
    )


async def _recompute(user_id: str, start: date | None):
    from training_load_server.core.database import close_database, get_session
    from training_load_server.services.aggregation import DailyAggregator
    from training_load_server.services.metrics import PMCService

    try:
        async with get_session() as session:
            start = start or await DailyAggregator(session).earliest_activity_date(user_id)
            if start is None:
                return None
            return await PMCService(session).recompute_from(user_id, start)
    finally:
        await close_database()


@app.command("roll-forward")
def roll_forward() -> None:
    """Extend every user's PMC through today and settle pending recomputes."""
    stats = asyncio.run(_roll_forward())
    typer.echo(
        f"Rolled forward {stats['updated']} of {stats['users']} users "
        f"({stats['failed']} failed)"
    )


async def _roll_forward() -> dict[str, object]:
    from training_load_server.core.database import async_session_maker, close_database
    from training_load_server.services.scheduler import MetricsScheduler, RollForwardTrigger

    try:
        return await MetricsScheduler(async_session_maker).run_cycle(RollForwardTrigger.MANUAL)
    finally:
        await close_database()


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
