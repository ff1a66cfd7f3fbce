"""Command-line entry points for the holder sync engine."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer

from holder_sync.config import get_settings
from holder_sync.service import HolderSyncService
from holder_sync.sync import SyncOutcome

log = logging.getLogger(__name__)

T = TypeVar("T")

app = typer.Typer(help="Sync token holders, prices and pool metrics")


def _configure_logging() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _with_service(fn: Callable[[HolderSyncService], Awaitable[T]]) -> T:
    async def runner() -> T:
        async with HolderSyncService() as service:
            return await fn(service)

    return asyncio.run(runner())


def _echo_json(data: dict[str, Any]) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


@app.callback()
def main() -> None:
    _configure_logging()


@app.command("init-db")
def init_db() -> None:
    """Create database tables (development; use Alembic in production)."""
    _with_service(lambda service: service.init_schema())
    log.info("[cli] Database schema initialized")


@app.command("sync-pool")
def sync_pool(pool_id: str = typer.Argument(..., help="Pool id to sync")) -> None:
    """Sync holders, price and metrics for one pool."""
    result = _with_service(lambda service: service.sync_pool(pool_id))
    _echo_json(result.to_dict())
    if result.outcome in (SyncOutcome.FAILED, SyncOutcome.NO_HOLDERS):
        raise typer.Exit(code=1)


@app.command("sync-all")
def sync_all() -> None:
    """Sync every pool with a contract address once."""
    run = _with_service(lambda service: service.run_once())
    _echo_json(run.to_dict())
    if run.failed:
        raise typer.Exit(code=1)


@app.command("run")
def run() -> None:
    """Sync all pools now, then on the configured interval until interrupted."""
    service = HolderSyncService()
    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        log.info("[cli] Interrupted; shutting down")


@app.command("status")
def status() -> None:
    """Show configuration (secrets redacted) and scheduler status."""
    settings = get_settings()
    report = _with_service(_status_report)
    _echo_json({"settings": settings.redacted_summary(), **report})


async def _status_report(service: HolderSyncService) -> dict[str, Any]:
    events = await service.recent_events(limit=10)
    return {
        "scheduler": service.status(),
        "recent_events": [
            {
                "created_at": e.created_at,
                "pool_id": e.pool_id,
                "event_type": e.event_type,
                "severity": e.severity,
                "message": e.message,
            }
            for e in events
        ],
    }


if __name__ == "__main__":
    app()
