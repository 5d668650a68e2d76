"""Typer CLI for EventEase."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .auth import (
    EVENT_OWNER,
    ROLES,
    UserExistsError,
    prune_expired_sessions,
    register_user,
)
from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .crud import promote_to_admin, record_audit_log
from .database import get_session
from .seed import seed_fake_data
from .storage import clear_database, init_db, upgrade_database

app = typer.Typer(help="EventEase command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _readonly_exit(exc: OperationalError, action: str) -> None:
    message = str(getattr(exc, "orig", exc)).lower()
    if "readonly" in message or "read-only" in message:
        typer.secho(
            f"Unable to {action} because the database is read-only. "
            f"Ensure write access to {settings.database_path}.",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        _readonly_exit(exc, "upgrade")
        raise

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Start the FastAPI application under uvicorn."""
    init_db()
    config = uvicorn.Config(
        "eventease.api:app",
        host=host,
        port=port,
        reload=reload,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting EventEase on {host}:{port}")
    server.run()


@app.command("seed-data")
def seed_data(
    owners: int = typer.Option(
        settings.seed_owners, "--owners", min=0, help="Number of event owners to create"
    ),
    events_per_owner: int = typer.Option(
        settings.seed_events_per_owner,
        "--events-per-owner",
        min=0,
        help="Events to create for each owner",
    ),
    max_rsvps: int = typer.Option(
        settings.seed_rsvps_per_event,
        "--max-rsvps",
        min=0,
        help="Maximum RSVPs to attach to each event",
    ),
    max_views: int = typer.Option(
        settings.seed_views_per_event,
        "--max-views",
        min=0,
        help="Maximum page views to record for each event",
    ),
    audit_logs: int = typer.Option(
        settings.seed_audit_logs,
        "--audit-logs",
        min=0,
        help="Number of audit log rows to create",
    ),
):
    """Populate the database with fake users, events and activity."""
    stats = seed_fake_data(
        owners=owners,
        events_per_owner=events_per_owner,
        max_rsvps_per_event=max_rsvps,
        max_views_per_event=max_views,
        audit_logs=audit_logs,
    )
    typer.echo(
        f"Seed complete: {stats['users']} users, {stats['events']} events, "
        f"{stats['rsvps']} RSVPs, {stats['views']} views, "
        f"{stats['audit_logs']} audit logs created."
    )


@app.command("clear-db")
def clear_db(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
) -> None:
    """Delete every row from the database, keeping the schema."""
    if not yes:
        typer.confirm("This deletes all users, events and RSVPs. Continue?", abort=True)
    init_db()
    removed = clear_database()
    typer.echo("Database cleared:")
    for table_name, count in removed.items():
        typer.echo(f"- {table_name}: {count}")


@app.command("make-admin")
def make_admin(email: str = typer.Argument(..., help="E-mail of the user to promote")):
    """Grant the ADMIN role to an existing user."""
    init_db()
    with get_session() as session:
        result = promote_to_admin(session, email)
        if result is None:
            typer.secho(f"No user found with email {email}", err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1)
        user, previous = result
        session.commit()
        record_audit_log(
            session,
            action="MAKE_ADMIN",
            actor_id=user.id,
            target_user_id=user.id,
            details={
                "previous_role": previous,
                "new_role": user.role,
                "method": "script",
            },
        )
        typer.echo(f"{user.email} is now {user.role} (was {previous})")


@app.command("create-user")
def create_user(
    email: str = typer.Option(..., "--email", help="Login e-mail"),
    name: str = typer.Option(..., "--name", help="Display name"),
    password: str = typer.Option(
        ..., "--password", prompt=True, hide_input=True, confirmation_prompt=True
    ),
    role: str = typer.Option(EVENT_OWNER, "--role", help="ADMIN, STAFF or EVENT_OWNER"),
) -> None:
    """Create a user with e-mail and password credentials."""
    normalized_role = role.strip().upper()
    if normalized_role not in ROLES:
        typer.secho(f"Unknown role: {role}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    init_db()
    try:
        with get_session() as session:
            user = register_user(
                session,
                name=name,
                email=email,
                password=password,
                role=normalized_role,
            )
            typer.echo(f"Created {user.role} {user.email} ({user.id})")
    except UserExistsError as exc:
        typer.secho(str(exc), err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)


@app.command("prune-sessions")
def prune_sessions() -> None:
    """Delete expired login sessions."""
    init_db()
    with get_session() as session:
        removed = prune_expired_sessions(session)
    typer.echo(f"Removed {removed} expired sessions.")


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    analytics_window_days: int | None = typer.Option(
        None, "--analytics-window-days", min=1, help="Days shown in dashboard trends"
    ),
    recent_events_limit: int | None = typer.Option(
        None, "--recent-events-limit", min=1, help="Recent/upcoming events on the dashboard"
    ),
    audit_log_limit: int | None = typer.Option(
        None, "--audit-log-limit", min=1, help="Audit rows returned to admins"
    ),
    session_max_age_days: int | None = typer.Option(
        None, "--session-max-age-days", min=1, help="Login session lifetime"
    ),
    session_cookie_secure: bool | None = typer.Option(
        None,
        "--secure-cookies/--no-secure-cookies",
        help="Mark the session cookie Secure (HTTPS only)",
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to eventease.toml (default: ./eventease.toml)"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "analytics_window_days": analytics_window_days,
        "recent_events_limit": recent_events_limit,
        "audit_log_limit": audit_log_limit,
        "session_max_age_days": session_max_age_days,
        "session_cookie_secure": session_cookie_secure,
        "app_host": host,
        "app_port": port,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

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
