"""Typer CLI for Motion."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .cleanup import run_reconcile_sweep
from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .lifecycle import mark_past_events, vacuum_database
from .scheduler import start_scheduler, stop_scheduler
from .seed import seed_fake_data
from .storage import init_db, upgrade_database

app = typer.Typer(help="Motion command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the SQLite database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        message = str(getattr(exc, "orig", exc)).lower()
        if "readonly" in message or "read-only" in message:
            typer.secho(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("lifecycle")
def lifecycle(
    vacuum: bool = typer.Option(
        False,
        "--vacuum",
        help="Run SQLite VACUUM after the lifecycle pass completes",
    ),
) -> None:
    """Mark finished events as past."""
    init_db()
    stats = mark_past_events()
    typer.echo(f"Lifecycle complete: {stats}")
    if vacuum:
        vacuum_database()
        typer.echo("Database vacuum complete.")


@app.command("reconcile")
def reconcile() -> None:
    """Revoke RSVPs on events their holders can no longer see."""
    init_db()
    stats = run_reconcile_sweep()
    typer.echo(
        f"Reconciliation complete: {stats['events_checked']} events checked, "
        f"{stats['rsvps_revoked']} RSVPs revoked."
    )


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start FastAPI with APScheduler."""
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    config = uvicorn.Config(
        "motion.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting Motion on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()


@app.command("seed-data")
def seed_data(
    users: int = typer.Option(
        settings.seed_users, "--users", min=1, help="Number of individual users"
    ),
    organizations: int = typer.Option(
        settings.seed_organizations,
        "--organizations",
        min=0,
        help="Number of organizations",
    ),
    events: int = typer.Option(
        settings.seed_events, "--events", min=0, help="Number of events to create"
    ),
    max_rsvps: int = typer.Option(
        settings.seed_rsvps_per_event,
        "--max-rsvps",
        min=0,
        help="Maximum RSVPs to attach to each event",
    ),
    longitude: float = typer.Option(
        settings.seed_center_longitude,
        "--longitude",
        min=-180.0,
        max=180.0,
        help="Longitude events are scattered around",
    ),
    latitude: float = typer.Option(
        settings.seed_center_latitude,
        "--latitude",
        min=-90.0,
        max=90.0,
        help="Latitude events are scattered around",
    ),
    radius: float = typer.Option(
        settings.seed_radius_miles,
        "--radius",
        min=0.1,
        help="Scatter radius in miles",
    ),
):
    """Populate the database with fake users, events and RSVPs for testing."""
    stats = seed_fake_data(
        user_count=users,
        organization_count=organizations,
        event_count=events,
        max_rsvps_per_event=max_rsvps,
        center_longitude=longitude,
        center_latitude=latitude,
        radius_miles=radius,
    )
    typer.echo(
        f"Seed complete: {stats['users']} users, {stats['organizations']} organizations, "
        f"{stats['events']} events, {stats['rsvps']} RSVPs "
        f"({stats['waitlisted']} waitlisted) created."
    )


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    default_radius: float | None = typer.Option(
        None,
        "--default-radius",
        min=0.1,
        help="Feed radius in miles when the client sends none",
    ),
    max_radius: float | None = typer.Option(
        None, "--max-radius", min=0.1, help="Largest feed radius a client may request"
    ),
    max_results: int | None = typer.Option(
        None, "--max-results", min=1, help="Maximum events returned by the feed"
    ),
    grace_minutes: int | None = typer.Option(
        None,
        "--grace-minutes",
        min=0,
        help="Minutes after an event ends that it stays in the feed",
    ),
    max_plus_ones: int | None = typer.Option(
        None, "--max-plus-ones", min=0, help="Largest party size beyond the RSVP holder"
    ),
    cleanup_delay_seconds: int | None = typer.Option(
        None,
        "--cleanup-delay-seconds",
        min=0,
        help="Delay before revoking RSVPs after a relation is severed",
    ),
    cleanup_sweep_hours: int | None = typer.Option(
        None, "--cleanup-sweep-hours", min=1, help="Hours between reconciliation sweeps"
    ),
    lifecycle_hours: int | None = typer.Option(
        None, "--lifecycle-hours", min=1, help="Hours between lifecycle passes"
    ),
    vacuum_hours: int | None = typer.Option(
        None, "--vacuum-hours", help="Hours between SQLite VACUUM runs"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to motion.toml (default: ./motion.toml)"
    ),
    seed_users: int | None = typer.Option(
        None, "--seed-users", min=1, help="Default seed-data users"
    ),
    seed_organizations: int | None = typer.Option(
        None, "--seed-organizations", min=0, help="Default seed-data organizations"
    ),
    seed_events: int | None = typer.Option(
        None, "--seed-events", min=0, help="Default seed-data events"
    ),
    seed_rsvps_per_event: int | None = typer.Option(
        None, "--seed-rsvps-per-event", min=0, help="Default seed-data RSVPs per event"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle background scheduler (lifecycle/cleanup/vacuum)",
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "feed_default_radius_miles": default_radius,
        "feed_max_radius_miles": max_radius,
        "feed_max_results": max_results,
        "feed_grace_minutes": grace_minutes,
        "max_plus_ones": max_plus_ones,
        "cleanup_delay_seconds": cleanup_delay_seconds,
        "cleanup_sweep_hours": cleanup_sweep_hours,
        "lifecycle_interval_hours": lifecycle_hours,
        "sqlite_vacuum_hours": vacuum_hours,
        "app_host": host,
        "app_port": port,
        "seed_users": seed_users,
        "seed_organizations": seed_organizations,
        "seed_events": seed_events,
        "seed_rsvps_per_event": seed_rsvps_per_event,
        "enable_scheduler": enable_scheduler,
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


if __name__ == "__main__":
    app()
