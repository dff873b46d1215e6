"""Command-line interface for pricesync.

Commands:
- serve: Run the API server with the sync scheduler
- sync: Run one sync job for a tenant and wait for it
- detect: Run a conflict detection sweep for a tenant
- conflicts: List conflicts
- resolve: Resolve a pending conflict
- cleanup: Archive old closed conflicts and purge old price history
"""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

import click

from pricesync.core.types import (
    ChosenSource,
    ConflictStatus,
    ConflictType,
    Severity,
    StrategyName,
    SyncCadence,
)
from pricesync.engine.errors import PriceSyncError

if TYPE_CHECKING:
    from pricesync.engine.dispatcher import ResolveResult
    from pricesync.engine.service import PriceSyncEngine
    from pricesync.server.models import Conflict, SyncJob

T = TypeVar("T")

DB_PATH_HELP = "Path to database file (default: PRICESYNC_DB_PATH or ./pricesync.db)."


def _resolve_db_path(db_path: str | None) -> Path:
    return Path(db_path or os.environ.get("PRICESYNC_DB_PATH", "pricesync.db"))


def _require_db(db_path: str | None) -> Path:
    db_file = _resolve_db_path(db_path)
    if not db_file.exists():
        click.echo(f"Error: Database not found: {db_file}", err=True)
        click.echo("Make sure the server has been run at least once.", err=True)
        sys.exit(1)
    return db_file


def _with_engine(db_file: Path, work: Callable[[PriceSyncEngine], Awaitable[T]]) -> T:
    """Build an engine, run one coroutine against it, and shut it down."""
    from pricesync.server.app import build_engine

    async def _run() -> T:
        engine, erp_client = build_engine(db_file)
        await engine.start()
        try:
            return await work(engine)
        finally:
            await engine.stop()
            await erp_client.aclose()
            engine.db.close()

    return asyncio.run(_run())


@click.group()
@click.version_option(package_name="pricesync")
def cli() -> None:
    """Pricesync - ERP price synchronization and conflict resolution."""


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", type=int, default=8000, show_default=True, help="Bind port.")
@click.option("--db-path", type=click.Path(), default=None, help=DB_PATH_HELP)
def serve(host: str, port: int, db_path: str | None) -> None:
    """Run the API server with the sync scheduler."""
    import uvicorn

    if db_path:
        os.environ["PRICESYNC_DB_PATH"] = db_path
    uvicorn.run("pricesync.server.app:app_factory", factory=True, host=host, port=port)


@cli.command()
@click.argument("tenant_id")
@click.option(
    "--cadence",
    "-c",
    type=click.Choice([c.value for c in SyncCadence]),
    default=SyncCadence.INCREMENTAL.value,
    show_default=True,
    help="Sync cadence to run.",
)
@click.option("--db-path", type=click.Path(), default=None, help=DB_PATH_HELP)
def sync(tenant_id: str, cadence: str, db_path: str | None) -> None:
    """Run one sync job for TENANT_ID and wait for it to finish."""
    db_file = _require_db(db_path)

    async def work(engine: PriceSyncEngine) -> SyncJob:
        return await engine.run_sync(tenant_id, SyncCadence(cadence))

    job = _with_engine(db_file, work)
    click.echo(f"Job {job.id}: {job.status}")
    click.echo(
        f"  processed {job.processed_count}/{job.total_count}, "
        f"updated {job.updated_count}, failed {job.failed_count}"
    )
    if job.error_details:
        click.echo(f"  error: {job.error_details.get('message')}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("tenant_id")
@click.option("--db-path", type=click.Path(), default=None, help=DB_PATH_HELP)
def detect(tenant_id: str, db_path: str | None) -> None:
    """Run a conflict detection sweep for TENANT_ID."""
    db_file = _require_db(db_path)

    async def work(engine: PriceSyncEngine) -> list[Conflict]:
        return await engine.detect_conflicts(tenant_id)

    conflicts = _with_engine(db_file, work)
    pending = [c for c in conflicts if c.status == ConflictStatus.PENDING.value]
    click.echo(f"{len(conflicts)} conflict(s) found, {len(pending)} awaiting review.")
    for conflict in pending:
        click.echo(
            f"  {conflict.id}  {conflict.conflict_type:<13} {conflict.severity:<6} "
            f"{conflict.external_id or conflict.entity_id}"
        )


@cli.command()
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in ConflictStatus]),
    default=None,
    help="Only conflicts with this status.",
)
@click.option(
    "--type",
    "type_filter",
    type=click.Choice([t.value for t in ConflictType]),
    default=None,
    help="Only conflicts of this type.",
)
@click.option(
    "--severity",
    type=click.Choice([s.value for s in Severity]),
    default=None,
    help="Only conflicts with this severity.",
)
@click.option("--tenant", "tenant_id", default=None, help="Only conflicts of this tenant.")
@click.option("--limit", type=int, default=100, show_default=True)
@click.option("--db-path", type=click.Path(), default=None, help=DB_PATH_HELP)
def conflicts(
    status_filter: str | None,
    type_filter: str | None,
    severity: str | None,
    tenant_id: str | None,
    limit: int,
    db_path: str | None,
) -> None:
    """List conflicts, newest detection first."""
    from pricesync.server.database import Database

    db = Database(_require_db(db_path))
    try:
        rows = db.list_conflicts(tenant_id, status_filter, type_filter, severity, None, limit)
    finally:
        db.close()

    if not rows:
        click.echo("No conflicts.")
        return
    for conflict in rows:
        click.echo(
            f"{conflict.id}  {conflict.tenant_id:<12} {conflict.conflict_type:<13} "
            f"{conflict.severity:<6} {conflict.status:<9} "
            f"{conflict.external_id or conflict.entity_id}"
        )


@cli.command()
@click.argument("conflict_id")
@click.option(
    "--source",
    type=click.Choice(
        [ChosenSource.LOCAL.value, ChosenSource.ERP.value, ChosenSource.MERGED.value]
    ),
    default=None,
    help="Keep this side's values.",
)
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in StrategyName]),
    default=None,
    help="Resolve with this strategy.",
)
@click.option("--reason", default="", help="Reason recorded with the resolution.")
@click.option("--operator", default=lambda: os.environ.get("USER", "cli"), help="Operator id.")
@click.option("--db-path", type=click.Path(), default=None, help=DB_PATH_HELP)
def resolve(
    conflict_id: str,
    source: str | None,
    strategy: str | None,
    reason: str,
    operator: str,
    db_path: str | None,
) -> None:
    """Resolve pending conflict CONFLICT_ID."""
    from pricesync.engine.dispatcher import ManualResolution

    db_file = _require_db(db_path)
    request = ManualResolution(
        reason=reason,
        strategy=StrategyName(strategy) if strategy else None,
        chosen_source=ChosenSource(source) if source else None,
    )

    async def work(engine: PriceSyncEngine) -> ResolveResult:
        return await engine.resolve_conflict(conflict_id, request, operator)

    try:
        result = _with_engine(db_file, work)
    except PriceSyncError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not result.success:
        click.echo(f"Not resolved: {result.outcome.reason}", err=True)
        sys.exit(1)
    click.echo(f"Resolved {conflict_id}: {result.outcome.reason}")


@cli.command()
@click.option(
    "--older-than-days",
    "-d",
    type=int,
    default=None,
    help="Archive/purge records older than N days (default: engine config).",
)
@click.option("--db-path", type=click.Path(), default=None, help=DB_PATH_HELP)
def cleanup(older_than_days: int | None, db_path: str | None) -> None:
    """Archive old closed conflicts and purge old price history.

    This command can be run manually or via cron for scheduled cleanup.

    Examples:

        # Use engine defaults (30 days conflicts, 90 days history)
        pricesync cleanup

        # Archive and purge everything older than 7 days
        pricesync cleanup --older-than-days 7
    """
    from pricesync.core.config import EngineConfig
    from pricesync.server.database import Database

    db_file = _require_db(db_path)
    config = EngineConfig.from_env()
    if older_than_days is not None:
        conflict_days = history_days = older_than_days
    else:
        conflict_days = config.conflict_retention_days
        history_days = config.price_history_retention_days

    click.echo(f"Database: {db_file}")
    db = Database(db_file)
    try:
        archived = db.archive_conflicts(conflict_days)
        purged = db.purge_price_history(history_days)
    finally:
        db.close()

    if archived or purged:
        click.echo(f"Archived {archived} conflict(s), purged {purged} price history row(s).")
    else:
        click.echo("Nothing to clean up.")


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = ["cli", "main"]
