"""Typer CLI for EventCall."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer
import uvicorn
from sqlalchemy.exc import OperationalError

from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .errors import EventCallError
from .fallback import SubmissionQueue
from .ownership import Identity
from .remote import FileDataStore, build_store
from .seed import seed_fake_data
from .storage import get_meta, LAST_SYNC_KEY, upgrade_database
from .submitter import RemoteSubmitter
from .sync import SYSTEM_IDENTITY, SyncOrchestrator

app = typer.Typer(help="EventCall command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _identity(user: str | None) -> Identity:
    if not user:
        return SYSTEM_IDENTITY
    identity = Identity.from_values(user, admins=settings.admin_identities)
    if identity is None:
        raise typer.BadParameter("--user must not be blank")
    return identity


def _fail(message: str) -> None:
    typer.secho(message, err=True, fg=typer.colors.RED)
    raise typer.Exit(code=1)


@app.command("init-db")
def init_db_command(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Create or upgrade the local SQLite database."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        message = str(getattr(exc, "orig", exc)).lower()
        if "readonly" in message or "read-only" in message:
            _fail(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}."
            )
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return
    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start the FastAPI app; periodic sync starts with it when enabled."""
    upgrade_database(make_backup=False)
    config = uvicorn.Config(
        "eventcall.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting EventCall on {host}:{port}")
    server.run()


@app.command("sync")
def sync(
    user: str | None = typer.Option(
        None, "--user", help="Only process events owned by this email"
    ),
    event_id: str | None = typer.Option(None, "--event", help="Only process one event"),
    replay: bool = typer.Option(
        False, "--replay", help="Also resubmit locally stored fallback RSVPs"
    ),
) -> None:
    """Promote queued RSVPs into the canonical response files."""
    upgrade_database(make_backup=False)
    identity = _identity(user)

    async def run() -> dict:
        store = build_store(settings)
        orchestrator = SyncOrchestrator(
            store,
            submitter=RemoteSubmitter.from_settings(settings),
            conflict_retries=settings.conflict_retries,
        )
        try:
            loaded = await orchestrator.load_all(identity)
            if loaded["error"]:
                raise EventCallError(loaded["error"])
            if event_id:
                report = await orchestrator.sync_event_rsvps(event_id, identity)
            else:
                report = await orchestrator.process_pending_intake(identity)
            result = {"sync": report.as_dict()}
            if replay:
                result["replay"] = await orchestrator.replay_local_fallback(
                    identity, event_id=event_id
                )
            return result
        finally:
            await store.aclose()

    try:
        result = asyncio.run(run())
    except EventCallError as exc:
        _fail(f"Sync failed: {exc.message}")
    typer.echo(json.dumps(result, indent=2))


@app.command("pending")
def pending() -> None:
    """Show how many intake entries are waiting for a sync."""
    upgrade_database(make_backup=False)

    async def run() -> int:
        store = build_store(settings)
        try:
            return await SyncOrchestrator(store).pending_count()
        finally:
            await store.aclose()

    try:
        count = asyncio.run(run())
    except EventCallError as exc:
        _fail(f"Could not read the intake queue: {exc.message}")
    typer.echo(f"Pending intake entries: {count}")
    typer.echo(f"Local fallback entries: {SubmissionQueue().count()}")
    typer.echo(f"Last sync: {get_meta(LAST_SYNC_KEY) or 'never'}")


@app.command("queue")
def queue(
    event_id: str | None = typer.Option(None, "--event", help="Filter by event id"),
) -> None:
    """List RSVPs held in the local fallback store."""
    upgrade_database(make_backup=False)
    entries = SubmissionQueue().pending(event_id)
    if not entries:
        typer.echo("No locally stored RSVPs.")
        return
    for entry in entries:
        typer.echo(
            f"{entry.get('eventId')}  {entry.get('email')}  "
            f"{entry.get('name')}  rsvp={entry.get('rsvpId')}"
        )


@app.command("seed-data")
def seed_data(
    owner: str = typer.Option(..., "--owner", help="Email recorded as the events' creator"),
    events: int = typer.Option(
        settings.seed_events, "--events", min=0, help="Number of events to create"
    ),
    max_rsvps: int = typer.Option(
        settings.seed_rsvps_per_event,
        "--max-rsvps",
        min=0,
        help="Maximum RSVPs to attach to each event",
    ),
    seating_percent: int = typer.Option(
        50,
        "--seating-percent",
        min=0,
        max=100,
        help="Percentage of events created with a seating chart",
    ),
):
    """Populate the file store with fake events and RSVPs for testing."""
    if settings.store_backend != "file":
        _fail("seed-data only writes to the file store backend.")
    stats = asyncio.run(
        seed_fake_data(
            FileDataStore(settings.store_dir),
            owner_email=owner,
            event_count=events,
            max_rsvps_per_event=max_rsvps,
            seating_percentage=seating_percent,
        )
    )
    typer.echo(f"Seed complete: {stats['events']} events, {stats['rsvps']} RSVPs created.")


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    store_backend: str | None = typer.Option(
        None, "--store-backend", help="Remote store backend: file or github"
    ),
    github_owner: str | None = typer.Option(None, "--github-owner", help="Data repository owner"),
    github_repo: str | None = typer.Option(None, "--github-repo", help="Data repository name"),
    github_branch: str | None = typer.Option(None, "--github-branch", help="Data repository branch"),
    backend_url: str | None = typer.Option(None, "--backend-url", help="Dispatch backend base URL"),
    max_retries: int | None = typer.Option(
        None, "--max-retries", min=1, help="Submission attempts before local fallback"
    ),
    retry_delay: float | None = typer.Option(
        None, "--retry-delay", min=0.0, help="Seconds between submission attempts"
    ),
    sync_interval_minutes: int | None = typer.Option(
        None, "--sync-interval-minutes", min=1, help="Minutes between periodic syncs"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle periodic background sync",
    ),
    admin_users: str | None = typer.Option(
        None, "--admin-users", help="Comma separated privileged emails or usernames"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to eventcall.toml (default: ./eventcall.toml)"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "store_backend": store_backend,
        "github_owner": github_owner,
        "github_repo": github_repo,
        "github_branch": github_branch,
        "backend_url": backend_url,
        "max_retries": max_retries,
        "retry_delay_seconds": retry_delay,
        "sync_interval_minutes": sync_interval_minutes,
        "enable_scheduler": enable_scheduler,
        "admin_users": admin_users,
        "app_host": host,
        "app_port": port,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    settings_ref = settings
    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))
