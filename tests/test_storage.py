from __future__ import annotations

from eventease import crud, database, storage
from eventease.auth import register_user
from eventease.models import User
from eventease.utils import utcnow


def test_clear_database_removes_rows_children_first():
    with database.get_session() as session:
        owner = register_user(
            session, name="Owner", email="owner@example.com", password="pw-12345"
        )
        event = crud.create_event(session, owner=owner, title="Launch", start_date=utcnow())
        crud.create_rsvp(session, event=event, name="Guest", email="guest@example.com")
        crud.record_event_view(session, event)
        crud.create_audit_log(session, action="MAKE_ADMIN", actor_id=owner.id)

    removed = storage.clear_database()

    assert list(removed) == [name for name, _ in storage.CLEAR_ORDER]
    assert removed["users"] == 1
    assert removed["accounts"] == 1
    assert removed["events"] == 1
    assert removed["rsvps"] == 1
    assert removed["event_views"] == 1
    assert removed["audit_logs"] == 1
    with database.get_session() as session:
        assert session.query(User).count() == 0
