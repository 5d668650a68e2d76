"""Database initialization and maintenance helpers."""

from __future__ import annotations

import shutil
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import delete, inspect

from . import database
from .config import settings
from .database import get_session
from .models import RSVP, Account, AuditLog, Event, EventView, Session, User

# Children first so foreign keys never dangle mid-way.
CLEAR_ORDER = (
    ("event_views", EventView),
    ("rsvps", RSVP),
    ("events", Event),
    ("audit_logs", AuditLog),
    ("sessions", Session),
    ("accounts", Account),
    ("users", User),
)


def init_db() -> None:
    upgrade_database(make_backup=False)


def _alembic_config() -> Config:
    package_dir = Path(__file__).resolve().parent
    script_location = package_dir / "alembic"
    ini_path = script_location.parent / "alembic.ini"

    config = Config(str(ini_path)) if ini_path.exists() else Config()
    config.set_main_option("script_location", str(script_location))
    config.set_main_option(
        "sqlalchemy.url",
        database.engine.url.render_as_string(hide_password=False).replace("%", "%%"),
    )
    return config


def upgrade_database(*, make_backup: bool = True) -> list[str]:
    """Bring the schema up to the latest Alembic revision.

    Returns a list of applied actions.
    """
    actions: list[str] = []
    engine = database.engine
    db_path = Path(settings.database_path)

    if make_backup and engine.dialect.name == "sqlite" and db_path.exists():
        backup_path = db_path.with_suffix(db_path.suffix + ".bak")
        shutil.copy(db_path, backup_path)
        actions.append(f"Backup created at {backup_path}")

    inspector = inspect(engine)
    has_alembic = inspector.has_table("alembic_version")
    has_users = inspector.has_table("users")
    config = _alembic_config()

    if not has_alembic and not has_users:
        command.upgrade(config, "head")
        actions.append("Ran Alembic upgrade to head (fresh database)")
    elif not has_alembic:
        # Tables created outside Alembic (e.g. metadata.create_all): baseline it.
        command.stamp(config, "head")
        actions.append("Stamped existing database to Alembic head")
    else:
        command.upgrade(config, "head")
        actions.append("Applied Alembic migrations to head")

    return actions


def clear_database() -> dict[str, int]:
    """Delete every row from the application tables.

    Returns the number of rows removed per table.
    """
    removed: dict[str, int] = {}
    with get_session() as session:
        for table_name, model in CLEAR_ORDER:
            result = session.execute(delete(model))
            removed[table_name] = result.rowcount or 0
    return removed
