"""``deployctl`` -- operator interface for the deployment control plane.

Runs the API server, prepares the state database, inspects an
organization's apps and runs the lifecycle sweep on demand (useful when
the in-process sweeper is disabled, e.g. from a cron job).  Human-readable
output goes to *stderr* via Rich; ``--json`` writes machine-readable
results to *stdout*.
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import TYPE_CHECKING

import typer
from rich.console import Console
from sqlalchemy.exc import SQLAlchemyError

from deploy_cli.display import display_org_apps, display_sweep_report

if TYPE_CHECKING:
    from deploy_api.services.lifecycle_sweeper import SweepReport
    from deploy_core.models.orgapp import OrgAppRecord

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="deployctl",
    help="Deployment lifecycle control plane for organization apps.",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="State database URL (defaults to the API settings).",
        envvar="DEPLOY_API_DATABASE_URL",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _resolve_database_url() -> str:
    if _database_url:
        return _database_url
    from deploy_api.config import load_api_settings

    return load_api_settings().database_url


def _write_json(payload: object) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind."),
    port: int = typer.Option(8000, "--port", "-p", help="Port to listen on.", min=1, max=65535),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes (development only)."),
) -> None:
    """Run the control plane API server."""
    import uvicorn

    console.print(f"[green]✓[/green] API server starting on http://{host}:{port}")
    console.print(f"[green]✓[/green] OpenAPI docs at http://{host}:{port}/docs")
    uvicorn.run(
        "deploy_api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
        access_log=False,
    )


# ---------------------------------------------------------------------------
# init-db
# ---------------------------------------------------------------------------


async def _init_db(database_url: str) -> None:
    from deploy_core.state.database import get_engine
    from deploy_core.state.sqlite_adapter import create_local_tables

    engine = get_engine(database_url)
    try:
        await create_local_tables(engine)
    finally:
        await engine.dispose()


@app.command(name="init-db")
def init_db() -> None:
    """Create the state tables if they do not exist.

    Intended for SQLite and development databases; production PostgreSQL
    is migrated with ``alembic upgrade head``.
    """
    database_url = _resolve_database_url()
    try:
        asyncio.run(_init_db(database_url))
    except SQLAlchemyError as exc:
        console.print(f"[red]Failed to create tables: {exc}[/red]")
        raise typer.Exit(code=3) from exc
    console.print("[green]✓[/green] State tables ready")


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


async def _load_org_apps(database_url: str, org_id: str) -> list[OrgAppRecord]:
    from deploy_core.state.database import get_engine
    from deploy_core.state.store import StateStore

    engine = get_engine(database_url)
    try:
        return await StateStore(engine).list_by_org(org_id)
    finally:
        await engine.dispose()


@app.command()
def status(
    org_id: str = typer.Argument(..., help="Organization whose apps to list."),
) -> None:
    """Show the lifecycle state and version drift of an organization's apps."""
    database_url = _resolve_database_url()
    try:
        records = asyncio.run(_load_org_apps(database_url, org_id))
    except SQLAlchemyError as exc:
        console.print(f"[red]Could not read deployment state: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _write_json([r.model_dump(mode="json", exclude={"version"}) for r in records])
    else:
        display_org_apps(console, org_id, records)


# ---------------------------------------------------------------------------
# sweep
# ---------------------------------------------------------------------------


async def _sweep(database_url: str) -> SweepReport:
    from deploy_api.config import load_api_settings
    from deploy_api.services.draft_service import DraftService
    from deploy_api.services.event_bus import get_event_bus
    from deploy_api.services.lifecycle_sweeper import LifecycleSweeper
    from deploy_api.services.orchestrator import DeploymentOrchestrator
    from deploy_api.services.progress_streamer import ProgressHub
    from deploy_api.services.provider_client import ProviderClient
    from deploy_core.config import load_lifecycle_settings
    from deploy_core.state.database import get_engine
    from deploy_core.state.store import StateStore

    settings = load_api_settings()
    lifecycle = load_lifecycle_settings()
    engine = get_engine(database_url)
    provider = ProviderClient(
        base_url=settings.provider_url,
        timeout=settings.provider_timeout,
        api_key=settings.provider_api_key.get_secret_value(),
    )
    bus = get_event_bus()
    store = StateStore(engine)
    sweeper = LifecycleSweeper(
        DeploymentOrchestrator(store, provider, ProgressHub(), lifecycle, bus=bus),
        DraftService(store, provider, lifecycle, bus=bus),
    )
    try:
        return await sweeper.run_once()
    finally:
        await provider.close()
        await engine.dispose()


@app.command()
def sweep() -> None:
    """Run one watchdog and draft expiry pass, then exit."""
    database_url = _resolve_database_url()
    try:
        report = asyncio.run(_sweep(database_url))
    except SQLAlchemyError as exc:
        console.print(f"[red]Sweep failed: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _write_json(report.model_dump(mode="json"))
    else:
        display_sweep_report(console, report)
