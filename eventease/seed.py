"""Development helpers for populating fake users, events and activity."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .auth import ADMIN, EVENT_OWNER, STAFF, get_user_by_email, register_user
from .crud import (
    RSVP_STATUSES,
    create_audit_log,
    create_event,
    create_rsvp,
    record_event_view,
)
from .database import get_session
from .models import Event, User
from .storage import init_db
from .utils import utcnow

SEED_ADMIN = ("admin@eventease.com", "Admin User", "aAdmin@123")
SEED_STAFF = ("staff@eventease.com", "Staff User", "sAdmin@123")
SEED_OWNER_PASSWORD = "oAdmin@123"

VIEW_SOURCES = ["direct", "social", "email", "search", "referral", "newsletter"]

_event_types = [
    "Conference",
    "Workshop",
    "Meetup",
    "Hackathon",
    "Networking Night",
    "Webinar",
    "Product Launch",
    "Panel Discussion",
]
_custom_field_templates = [
    {"label": "Company", "type": "text", "placeholder": "Where do you work?"},
    {"label": "Years of experience", "type": "number"},
    {
        "label": "T-shirt size",
        "type": "select",
        "options": ["S", "M", "L", "XL"],
    },
    {
        "label": "Dietary preference",
        "type": "select",
        "options": ["None", "Vegetarian", "Vegan", "Gluten-free"],
    },
    {"label": "Subscribe to updates", "type": "checkbox"},
    {"label": "Arrival date", "type": "date"},
    {"label": "Work email", "type": "email"},
]
_status_weights = [8, 1, 1]
_audit_actions = ["UPDATE_ROLE", "UPDATE_PROFILE", "MAKE_ADMIN"]


def seed_fake_data(
    *,
    owners: int = 2,
    events_per_owner: int = 3,
    max_rsvps_per_event: int = 15,
    max_views_per_event: int = 30,
    audit_logs: int = 15,
) -> dict[str, int]:
    """Populate the database with synthetic users, events and activity."""
    if owners < 0:
        raise ValueError("owners must be >= 0")
    if events_per_owner < 0:
        raise ValueError("events_per_owner must be >= 0")
    if max_rsvps_per_event < 0:
        raise ValueError("max_rsvps_per_event must be >= 0")
    if max_views_per_event < 0:
        raise ValueError("max_views_per_event must be >= 0")
    if audit_logs < 0:
        raise ValueError("audit_logs must be >= 0")

    init_db()
    fake = Faker()
    stats = {"users": 0, "events": 0, "rsvps": 0, "views": 0, "audit_logs": 0}

    with get_session() as session:
        admin, created = _ensure_user(session, *SEED_ADMIN, role=ADMIN)
        stats["users"] += created
        staff, created = _ensure_user(session, *SEED_STAFF, role=STAFF)
        stats["users"] += created

        event_owners: list[User] = []
        for index in range(1, owners + 1):
            owner, created = _ensure_user(
                session,
                f"eventowner{index}@eventease.com",
                fake.name(),
                SEED_OWNER_PASSWORD,
                role=EVENT_OWNER,
            )
            stats["users"] += created
            event_owners.append(owner)

        for owner in event_owners:
            for _ in range(events_per_owner):
                event = _create_event(session, fake, owner)
                stats["events"] += 1
                stats["rsvps"] += _create_rsvps(
                    session, fake, event, max_rsvps_per_event
                )
                stats["views"] += _create_views(session, event, max_views_per_event)

        users = [admin, staff, *event_owners]
        for _ in range(audit_logs):
            _create_audit_log(session, fake, admin, users)
            stats["audit_logs"] += 1

    return stats


def _ensure_user(
    session: Session, email: str, name: str, password: str, *, role: str
) -> tuple[User, int]:
    existing = get_user_by_email(session, email)
    if existing:
        return existing, 0
    user = register_user(
        session,
        name=name,
        email=email,
        password=password,
        role=role,
        email_verified=True,
    )
    return user, 1


def _custom_fields() -> list[dict]:
    chosen = random.sample(_custom_field_templates, k=random.randint(0, 3))
    fields = []
    for index, template in enumerate(chosen, start=1):
        field = {"id": f"field-{index}", "required": random.random() < 0.4}
        field.update(template)
        fields.append(field)
    return fields


def _random_start_date() -> datetime:
    now = utcnow()
    day_offset = random.randint(-30, 45)
    minute_offset = random.randint(0, 23 * 60)
    return now + timedelta(days=day_offset, minutes=minute_offset)


def _create_event(session: Session, fake: Faker, owner: User) -> Event:
    start_date = _random_start_date()
    end_date = None
    if random.random() > 0.2:
        end_date = start_date + timedelta(hours=random.randint(1, 48))
    return create_event(
        session,
        owner=owner,
        title=f"{fake.city()} {random.choice(_event_types)}",
        description="\n\n".join(fake.paragraphs(nb=2)),
        location=fake.address().replace("\n", ", "),
        start_date=start_date,
        end_date=end_date,
        custom_fields=_custom_fields(),
        is_published=random.random() < 0.75,
    )


def _fake_response(fake: Faker, field: dict):
    field_type = field["type"]
    if field_type == "number":
        return random.randint(0, 20)
    if field_type == "select":
        return random.choice(field["options"])
    if field_type == "checkbox":
        return random.random() < 0.5
    if field_type == "date":
        return fake.date_between(start_date="-30d", end_date="+30d").isoformat()
    if field_type == "email":
        return fake.email()
    return fake.company()


def _create_rsvps(session: Session, fake: Faker, event: Event, max_rsvps: int) -> int:
    if max_rsvps <= 0:
        return 0
    total = random.randint(0, max_rsvps)
    now = utcnow()
    for _ in range(total):
        responses = {}
        for field in event.custom_fields or []:
            if field.get("required") or random.random() < 0.7:
                responses[field["id"]] = _fake_response(fake, field)
        create_rsvp(
            session,
            event=event,
            name=fake.name(),
            email=fake.email(),
            phone=fake.phone_number() if random.random() < 0.6 else None,
            responses=responses,
            status=random.choices(RSVP_STATUSES, weights=_status_weights)[0],
            created_at=now - timedelta(minutes=random.randint(0, 30 * 24 * 60)),
        )
    return total


def _create_views(session: Session, event: Event, max_views: int) -> int:
    if max_views <= 0:
        return 0
    total = random.randint(0, max_views)
    now = utcnow()
    for _ in range(total):
        record_event_view(
            session,
            event,
            source=random.choice(VIEW_SOURCES),
            created_at=now - timedelta(minutes=random.randint(0, 30 * 24 * 60)),
        )
    return total


def _create_audit_log(
    session: Session, fake: Faker, admin: User, users: list[User]
) -> None:
    target = random.choice(users)
    action = random.choice(_audit_actions)
    if action == "UPDATE_PROFILE":
        details = {"field": "name", "old_value": fake.name(), "new_value": target.name}
        actor = target
    elif action == "MAKE_ADMIN":
        details = {"previous_role": EVENT_OWNER, "new_role": ADMIN, "method": "script"}
        actor = target
    else:
        details = {"previous_role": EVENT_OWNER, "new_role": target.role}
        actor = admin
    create_audit_log(
        session,
        action=action,
        actor_id=actor.id,
        target_user_id=target.id,
        details=details,
        created_at=utcnow() - timedelta(minutes=random.randint(0, 30 * 24 * 60)),
    )
