"""CRUD helpers for events, RSVPs, views, users and audit logs."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .auth import ADMIN, ROLES, get_user_by_email
from .config import settings
from .models import RSVP, AuditLog, Event, EventView, User
from .utils import to_naive_utc, utcnow

logger = logging.getLogger("uvicorn.error")

RSVP_STATUSES = ("CONFIRMED", "PENDING", "DECLINED")
DEFAULT_RSVP_STATUS = "CONFIRMED"

_EVENT_FIELDS = (
    "title",
    "description",
    "location",
    "start_date",
    "end_date",
    "custom_fields",
    "is_published",
)


def _now() -> datetime:
    return utcnow()


def _normalize_status(status: str | None) -> str:
    normalized = (status or DEFAULT_RSVP_STATUS).strip().upper()
    if normalized not in RSVP_STATUSES:
        raise ValueError(f"Invalid RSVP status: {status}")
    return normalized


def get_event(session: Session, event_id: str) -> Event | None:
    return session.get(Event, event_id)


def list_events(session: Session, *, user: User | None = None) -> Sequence[Event]:
    """Events newest first; limited to ``user``'s events when given."""
    stmt = select(Event).order_by(Event.created_at.desc())
    if user is not None:
        stmt = stmt.where(Event.user_id == user.id)
    return session.scalars(stmt).all()


def rsvp_counts(session: Session, event_ids: Sequence[str]) -> dict[str, int]:
    if not event_ids:
        return {}
    rows = session.execute(
        select(RSVP.event_id, func.count())
        .where(RSVP.event_id.in_(event_ids))
        .group_by(RSVP.event_id)
    ).all()
    return {event_id: count for event_id, count in rows}


def view_counts(session: Session, event_ids: Sequence[str]) -> dict[str, int]:
    if not event_ids:
        return {}
    rows = session.execute(
        select(EventView.event_id, func.count())
        .where(EventView.event_id.in_(event_ids))
        .group_by(EventView.event_id)
    ).all()
    return {event_id: count for event_id, count in rows}


def create_event(
    session: Session,
    *,
    owner: User,
    title: str,
    start_date: datetime,
    description: str | None = None,
    location: str | None = None,
    end_date: datetime | None = None,
    custom_fields: list[dict[str, Any]] | None = None,
    is_published: bool = False,
) -> Event:
    """Create and persist a new event owned by ``owner``."""
    event = Event(
        user=owner,
        title=title,
        description=description,
        location=location,
        start_date=to_naive_utc(start_date),
        end_date=to_naive_utc(end_date),
        custom_fields=custom_fields or [],
        is_published=is_published,
    )
    session.add(event)
    session.flush()
    return event


def update_event(session: Session, event: Event, **changes: Any) -> Event:
    """Apply a partial update; unknown keys are ignored."""
    for key in _EVENT_FIELDS:
        if key not in changes:
            continue
        value = changes[key]
        if key in {"start_date", "end_date"}:
            value = to_naive_utc(value)
        if key == "start_date" and value is None:
            continue
        if key == "custom_fields":
            value = value or []
        if key == "is_published":
            value = bool(value)
        setattr(event, key, value)
    if event.end_date and event.end_date < event.start_date:
        raise ValueError("End date must be after the start date")
    event.updated_at = _now()
    session.add(event)
    session.flush()
    return event


def set_event_published(session: Session, event: Event, published: bool) -> Event:
    event.is_published = published
    event.updated_at = _now()
    session.add(event)
    session.flush()
    return event


def toggle_event_published(session: Session, event: Event) -> Event:
    return set_event_published(session, event, not event.is_published)


def delete_event(session: Session, event: Event) -> None:
    """Delete an event together with its RSVPs and views."""
    session.delete(event)
    session.flush()


def create_rsvp(
    session: Session,
    *,
    event: Event,
    name: str,
    email: str,
    phone: str | None = None,
    responses: dict[str, Any] | None = None,
    status: str | None = None,
    created_at: datetime | None = None,
) -> RSVP:
    rsvp = RSVP(
        event=event,
        name=name,
        email=email,
        phone=phone or None,
        responses=responses or {},
        status=_normalize_status(status),
    )
    if created_at is not None:
        rsvp.created_at = created_at
        rsvp.updated_at = created_at
    session.add(rsvp)
    session.flush()
    return rsvp


def list_event_rsvps(session: Session, event: Event) -> Sequence[RSVP]:
    stmt = (
        select(RSVP)
        .where(RSVP.event_id == event.id)
        .order_by(RSVP.created_at.desc(), RSVP.id)
    )
    return session.scalars(stmt).all()


def record_event_view(
    session: Session,
    event: Event,
    *,
    source: str | None = None,
    created_at: datetime | None = None,
) -> EventView:
    """Append one view row. Every call inserts; there is no deduplication."""
    view = EventView(
        event=event,
        source=source or settings.default_view_source,
        created_at=created_at or _now(),
    )
    session.add(view)
    session.flush()
    return view


def list_users(session: Session) -> Sequence[User]:
    return session.scalars(select(User).order_by(User.created_at.desc())).all()


def event_counts_by_user(session: Session) -> dict[str, int]:
    rows = session.execute(
        select(Event.user_id, func.count()).group_by(Event.user_id)
    ).all()
    return {user_id: count for user_id, count in rows}


def set_user_role(session: Session, user: User, role: str) -> str:
    """Change ``user``'s role and return the role it had before."""
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    previous = user.role
    user.role = role
    user.updated_at = _now()
    session.add(user)
    session.flush()
    return previous


def update_user_name(session: Session, user: User, name: str) -> str:
    previous = user.name
    user.name = name
    user.updated_at = _now()
    session.add(user)
    session.flush()
    return previous


def promote_to_admin(session: Session, email: str) -> tuple[User, str] | None:
    """Grant ADMIN to the user with ``email``; returns (user, previous role)."""
    user = get_user_by_email(session, email)
    if not user:
        return None
    previous = set_user_role(session, user, ADMIN)
    return user, previous


def create_audit_log(
    session: Session,
    *,
    action: str,
    actor_id: str,
    target_user_id: str | None = None,
    details: dict[str, Any] | None = None,
    created_at: datetime | None = None,
) -> AuditLog:
    entry = AuditLog(
        action=action,
        user_id=actor_id,
        target_user_id=target_user_id,
        details=details or {},
        created_at=created_at or _now(),
    )
    session.add(entry)
    session.flush()
    return entry


def record_audit_log(session: Session, **entry: Any) -> AuditLog | None:
    """Commit an audit row after the primary write has been committed.

    A failure here is logged and swallowed; the primary write stands.
    """
    try:
        audit = create_audit_log(session, **entry)
        session.commit()
        return audit
    except SQLAlchemyError:
        session.rollback()
        logger.exception(
            "Failed to write audit log %s for user %s",
            entry.get("action"),
            entry.get("actor_id"),
        )
        return None


def list_audit_logs(session: Session, *, limit: int | None = None) -> Sequence[AuditLog]:
    stmt = select(AuditLog).order_by(AuditLog.created_at.desc())
    limit = settings.audit_log_limit if limit is None else limit
    if limit and limit > 0:
        stmt = stmt.limit(limit)
    return session.scalars(stmt).all()


def rsvp_activity(
    session: Session, event_ids: Sequence[str], *, since: datetime | None = None
) -> list[tuple[datetime, str]]:
    """``(created_at, status)`` for RSVPs on ``event_ids``, optionally windowed."""
    if not event_ids:
        return []
    stmt = select(RSVP.created_at, RSVP.status).where(RSVP.event_id.in_(event_ids))
    if since is not None:
        stmt = stmt.where(RSVP.created_at >= since)
    return [tuple(row) for row in session.execute(stmt).all()]


def view_activity(
    session: Session, event_ids: Sequence[str], *, since: datetime | None = None
) -> list[tuple[datetime, str]]:
    """``(created_at, source)`` for views on ``event_ids``."""
    if not event_ids:
        return []
    stmt = select(EventView.created_at, EventView.source).where(
        EventView.event_id.in_(event_ids)
    )
    if since is not None:
        stmt = stmt.where(EventView.created_at >= since)
    return [tuple(row) for row in session.execute(stmt).all()]
