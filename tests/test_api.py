from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import SQLAlchemyError

from eventease import api, crud
from eventease.auth import ADMIN, EVENT_OWNER, STAFF, create_session, register_user
from eventease.config import settings
from eventease.models import RSVP, AuditLog, Event, EventView, User
from eventease.models import Session as UserSession
from eventease.utils import utcnow

CUSTOM_FIELDS = [
    {"id": "company", "label": "Company", "type": "text", "required": True},
    {"id": "size", "label": "T-shirt size", "type": "select", "options": ["S", "M"]},
    {"id": "newsletter", "label": "Newsletter", "type": "checkbox"},
]


@pytest.fixture()
def client():
    with TestClient(api.app) as test_client:
        yield test_client


def _iso(dt: datetime) -> str:
    return dt.replace(microsecond=0).isoformat()


def _make_user(session, email: str, role: str = EVENT_OWNER) -> tuple[User, dict]:
    user = register_user(
        session, name=email.split("@")[0].title(), email=email, password="pw-123456", role=role
    )
    user_session = create_session(session, user)
    session.commit()
    return user, {"Authorization": f"Bearer {user_session.token}"}


def _make_event(session, owner: User, **kwargs) -> Event:
    values = {
        "title": "Launch Party",
        "start_date": utcnow().replace(microsecond=0) + timedelta(days=2),
        "is_published": True,
    }
    values.update(kwargs)
    event = crud.create_event(session, owner=owner, **values)
    session.commit()
    return event


# -------- Auth --------


def test_sign_up_sets_cookie_and_session(client):
    response = client.post(
        "/api/auth/sign-up",
        json={"name": "Ada", "email": "Ada@Example.com", "password": "long-enough"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["user"]["email"] == "ada@example.com"
    assert body["user"]["role"] == EVENT_OWNER
    assert settings.session_cookie_name in response.cookies

    current = client.get("/api/auth/session")
    assert current.status_code == 200
    assert current.json()["user"]["id"] == body["user"]["id"]


def test_sign_up_rejects_duplicates_and_bad_payloads(client, session):
    _make_user(session, "ada@example.com")

    duplicate = client.post(
        "/api/auth/sign-up",
        json={"name": "Ada", "email": "ada@example.com", "password": "long-enough"},
    )
    assert duplicate.status_code == 400
    assert duplicate.headers["content-type"].startswith("text/plain")
    assert "already exists" in duplicate.text

    short = client.post(
        "/api/auth/sign-up",
        json={"name": "Bo", "email": "bo@example.com", "password": "short"},
    )
    assert short.status_code == 400
    assert short.text.startswith("Invalid request data: password")


def test_sign_in_and_sign_out(client, session):
    _make_user(session, "ada@example.com")

    bad = client.post(
        "/api/auth/sign-in", json={"email": "ada@example.com", "password": "wrong-pass"}
    )
    assert bad.status_code == 401

    good = client.post(
        "/api/auth/sign-in", json={"email": "ada@example.com", "password": "pw-123456"}
    )
    assert good.status_code == 200
    assert client.get("/api/auth/session").status_code == 200

    assert client.post("/api/auth/sign-out").status_code == 200
    after = client.get("/api/auth/session")
    assert after.status_code == 401
    assert after.text == ""


def test_protected_endpoints_require_a_session(client):
    assert client.get("/api/events").status_code == 401
    assert client.get("/api/dashboard").status_code == 401
    response = client.get(
        "/api/events", headers={"Authorization": "Bearer not-a-real-token"}
    )
    assert response.status_code == 401
    assert response.text == "Unauthorized"


def test_expired_session_is_deleted_on_lookup(client, session):
    user, headers = _make_user(session, "owner@example.com")
    stale = session.query(UserSession).filter_by(user_id=user.id).one()
    stale.expires_at = utcnow() - timedelta(minutes=1)
    session.commit()

    response = client.get("/api/events", headers=headers)

    assert response.status_code == 401
    session.expire_all()
    assert session.query(UserSession).count() == 0


# -------- Events --------


def test_create_event_and_fetch_it(client, session):
    _, headers = _make_user(session, "owner@example.com")
    start = utcnow() + timedelta(days=3)
    response = client.post(
        "/api/events",
        headers=headers,
        json={
            "title": "Tech Summit",
            "description": "Talks",
            "location": "Hall A",
            "start_date": _iso(start),
            "end_date": _iso(start + timedelta(hours=4)),
            "custom_fields": CUSTOM_FIELDS,
        },
    )
    assert response.status_code == 201
    created = response.json()
    assert created["title"] == "Tech Summit"
    assert created["is_published"] is False
    assert [field["id"] for field in created["custom_fields"]] == [
        "company",
        "size",
        "newsletter",
    ]

    fetched = client.get(f"/api/events/{created['id']}", headers=headers)
    assert fetched.status_code == 200
    assert fetched.json()["rsvp_count"] == 0
    assert fetched.json()["view_count"] == 0
    assert fetched.json()["user"]["email"] == "owner@example.com"

    assert client.get("/api/events/missing", headers=headers).status_code == 404


def test_create_event_validation_errors(client, session):
    _, headers = _make_user(session, "owner@example.com")
    start = utcnow() + timedelta(days=3)

    short_title = client.post(
        "/api/events", headers=headers, json={"title": "Hi", "start_date": _iso(start)}
    )
    assert short_title.status_code == 400
    assert short_title.text.startswith("Invalid request data: title")

    backwards = client.post(
        "/api/events",
        headers=headers,
        json={
            "title": "Backwards",
            "start_date": _iso(start),
            "end_date": _iso(start - timedelta(days=1)),
        },
    )
    assert backwards.status_code == 400

    select_without_options = client.post(
        "/api/events",
        headers=headers,
        json={
            "title": "Broken fields",
            "start_date": _iso(start),
            "custom_fields": [{"id": "size", "label": "Size", "type": "select"}],
        },
    )
    assert select_without_options.status_code == 400


def test_list_events_scoped_by_role(client, session):
    owner, owner_headers = _make_user(session, "owner@example.com")
    other, _ = _make_user(session, "other@example.com")
    _, staff_headers = _make_user(session, "staff@example.com", role=STAFF)
    mine = _make_event(session, owner, title="Mine")
    _make_event(session, other, title="Theirs", is_published=False)
    crud.create_rsvp(session, event=mine, name="Guest", email="guest@example.com")
    session.commit()

    owned = client.get("/api/events", headers=owner_headers).json()
    assert [event["title"] for event in owned] == ["Mine"]
    assert owned[0]["rsvp_count"] == 1
    assert "user" not in owned[0]

    everything = client.get("/api/events", headers=staff_headers).json()
    assert sorted(event["title"] for event in everything) == ["Mine", "Theirs"]
    assert all("email" in event["user"] for event in everything)


def test_unpublished_event_hidden_from_other_owners(client, session):
    owner, _ = _make_user(session, "owner@example.com")
    _, other_headers = _make_user(session, "other@example.com")
    _, admin_headers = _make_user(session, "admin@example.com", role=ADMIN)
    draft = _make_event(session, owner, is_published=False)
    live = _make_event(session, owner, title="Live")

    assert client.get(f"/api/events/{draft.id}", headers=other_headers).status_code == 404
    assert client.get(f"/api/events/{live.id}", headers=other_headers).status_code == 200
    assert client.get(f"/api/events/{draft.id}", headers=admin_headers).status_code == 200


def test_update_and_publish_are_owner_only(client, session):
    owner, owner_headers = _make_user(session, "owner@example.com")
    _, other_headers = _make_user(session, "other@example.com")
    _, admin_headers = _make_user(session, "admin@example.com", role=ADMIN)
    event = _make_event(session, owner, is_published=False)

    for headers in (other_headers, admin_headers):
        denied = client.patch(
            f"/api/events/{event.id}", headers=headers, json={"title": "Hijacked"}
        )
        assert denied.status_code == 403
        assert client.post(f"/api/events/{event.id}/publish", headers=headers).status_code == 403

    updated = client.patch(
        f"/api/events/{event.id}",
        headers=owner_headers,
        json={"title": "Renamed", "location": "Online", "title_extra": "ignored"},
    )
    assert updated.status_code == 200
    assert updated.json()["title"] == "Renamed"
    assert updated.json()["location"] == "Online"

    backwards = client.patch(
        f"/api/events/{event.id}",
        headers=owner_headers,
        json={"end_date": _iso(event.start_date - timedelta(hours=1))},
    )
    assert backwards.status_code == 400

    toggled = client.post(f"/api/events/{event.id}/publish", headers=owner_headers)
    assert toggled.json()["is_published"] is True
    toggled = client.post(f"/api/events/{event.id}/publish", headers=owner_headers)
    assert toggled.json()["is_published"] is False


def test_delete_event_by_non_owner_is_forbidden(client, session):
    owner, owner_headers = _make_user(session, "owner@example.com")
    _, other_headers = _make_user(session, "other@example.com")
    _, staff_headers = _make_user(session, "staff@example.com", role=STAFF)
    _, admin_headers = _make_user(session, "admin@example.com", role=ADMIN)
    event = _make_event(session, owner)
    event_id = event.id
    crud.create_rsvp(session, event=event, name="Guest", email="guest@example.com")
    crud.record_event_view(session, event)
    session.commit()

    assert client.delete(f"/api/events/{event_id}").status_code == 401
    for headers in (other_headers, staff_headers, admin_headers):
        assert client.delete(f"/api/events/{event_id}", headers=headers).status_code == 403
    session.expire_all()
    assert session.get(Event, event_id) is not None

    assert client.delete(f"/api/events/{event_id}", headers=owner_headers).status_code == 204
    session.expire_all()
    assert session.get(Event, event_id) is None
    assert session.query(RSVP).count() == 0
    assert session.query(EventView).count() == 0


# -------- RSVP intake --------


def test_public_rsvp_submission(client, session):
    owner, owner_headers = _make_user(session, "owner@example.com")
    event = _make_event(session, owner, custom_fields=CUSTOM_FIELDS)

    response = client.post(
        f"/api/events/{event.id}/rsvps",
        json={
            "name": "Guest Person",
            "email": "guest@example.com",
            "responses": {"company": "Acme", "size": "M", "extra": "dropped"},
        },
    )
    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "CONFIRMED"
    assert body["responses"] == {"company": "Acme", "size": "M"}

    listed = client.get(f"/api/events/{event.id}/rsvps", headers=owner_headers)
    assert [rsvp["name"] for rsvp in listed.json()] == ["Guest Person"]


def test_public_rsvp_fails_closed(client, session):
    owner, _ = _make_user(session, "owner@example.com")
    _, other_headers = _make_user(session, "other@example.com")
    event = _make_event(session, owner, custom_fields=CUSTOM_FIELDS)
    draft = _make_event(session, owner, is_published=False)
    payload = {"name": "Guest Person", "email": "guest@example.com"}

    assert client.post("/api/events/missing/rsvps", json=payload).status_code == 404

    unpublished = client.post(f"/api/events/{draft.id}/rsvps", json=payload)
    assert unpublished.status_code == 403
    assert unpublished.text == "Event is not published"

    missing_required = client.post(
        f"/api/events/{event.id}/rsvps",
        json={**payload, "responses": {"size": "S"}},
    )
    assert missing_required.status_code == 400
    assert "responses.company" in missing_required.text

    bad_option = client.post(
        f"/api/events/{event.id}/rsvps",
        json={**payload, "responses": {"company": "Acme", "size": "XXL"}},
    )
    assert bad_option.status_code == 400

    assert client.get(f"/api/events/{event.id}/rsvps", headers=other_headers).status_code == 403
    session.expire_all()
    assert session.query(RSVP).count() == 0


# -------- Public pages --------


def test_event_page_records_a_view_per_render(client, session):
    owner, _ = _make_user(session, "owner@example.com")
    event = _make_event(session, owner, title="Garden Party", custom_fields=CUSTOM_FIELDS)

    first = client.get(f"/event/{event.id}")
    client.get(f"/event/{event.id}")

    assert first.status_code == 200
    assert "Garden Party" in first.text
    assert 'name="field_company"' in first.text
    session.expire_all()
    views = session.query(EventView).filter_by(event_id=event.id).all()
    assert len(views) == 2
    assert {view.source for view in views} == {settings.default_view_source}


def test_unpublished_event_page_still_counts_the_view(client, session):
    owner, _ = _make_user(session, "owner@example.com")
    draft = _make_event(session, owner, title="Secret Plans", is_published=False)

    response = client.get(f"/event/{draft.id}")
    assert response.status_code == 200
    assert "not published" in response.text
    assert "Secret Plans" not in response.text

    missing = client.get("/event/does-not-exist")
    assert missing.status_code == 404
    assert "text/html" in missing.headers["content-type"]

    session.expire_all()
    assert session.query(EventView).count() == 1


def test_rsvp_form_post(client, session):
    owner, _ = _make_user(session, "owner@example.com")
    event = _make_event(session, owner, custom_fields=CUSTOM_FIELDS)

    invalid = client.post(
        f"/event/{event.id}/rsvp",
        data={"name": "Guest Person", "email": "guest@example.com", "field_size": "S"},
    )
    assert invalid.status_code == 400
    assert "responses.company" in invalid.text

    created = client.post(
        f"/event/{event.id}/rsvp",
        data={
            "name": "Guest Person",
            "email": "guest@example.com",
            "phone": "",
            "field_company": "Acme",
            "field_size": "",
            "field_newsletter": "on",
        },
    )
    assert created.status_code == 200
    assert "registered" in created.text

    session.expire_all()
    rsvp = session.query(RSVP).one()
    assert rsvp.phone is None
    assert rsvp.responses == {"company": "Acme", "newsletter": True}


NUMBER_FIELDS = [{"id": "age", "label": "Age", "type": "number", "required": True}]


@pytest.mark.parametrize("value", ["nan", "inf"])
def test_rsvp_rejects_non_finite_numbers(client, session, value):
    owner, owner_headers = _make_user(session, "owner@example.com")
    event = _make_event(session, owner, custom_fields=NUMBER_FIELDS)
    guest = {"name": "Guest Person", "email": "guest@example.com"}

    form = client.post(f"/event/{event.id}/rsvp", data={**guest, "field_age": value})
    assert form.status_code == 400

    posted = client.post(
        f"/api/events/{event.id}/rsvps",
        json={**guest, "responses": {"age": value}},
    )
    assert posted.status_code == 400
    assert "responses.age" in posted.text

    listed = client.get(f"/api/events/{event.id}/rsvps", headers=owner_headers)
    assert listed.status_code == 200
    assert listed.json() == []


def test_rsvp_form_rejects_unpublished_event(client, session):
    owner, _ = _make_user(session, "owner@example.com")
    draft = _make_event(session, owner, is_published=False)
    response = client.post(
        f"/event/{draft.id}/rsvp",
        data={"name": "Guest Person", "email": "guest@example.com"},
    )
    assert response.status_code == 403


# -------- Export and analytics --------


def test_export_rsvps_csv(client, session):
    owner, owner_headers = _make_user(session, "owner@example.com")
    _, other_headers = _make_user(session, "other@example.com")
    event = _make_event(session, owner, title="Summit 2030", custom_fields=CUSTOM_FIELDS)
    crud.create_rsvp(
        session,
        event=event,
        name="First Guest",
        email="first@example.com",
        responses={"company": "Acme", "newsletter": True},
        created_at=datetime(2030, 1, 1, 8, 0, 0),
    )
    crud.create_rsvp(
        session,
        event=event,
        name="Second Guest",
        email="second@example.com",
        created_at=datetime(2030, 1, 2, 8, 0, 0),
    )
    session.commit()

    assert client.get(f"/api/events/{event.id}/rsvps/export", headers=other_headers).status_code == 403

    response = client.get(f"/api/events/{event.id}/rsvps/export", headers=owner_headers)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert 'filename="summit-2030-rsvps.csv"' in response.headers["content-disposition"]
    lines = response.text.split("\n")
    assert lines[0] == "Name,Email,Phone,Registration Date,Company,T-shirt size,Newsletter"
    assert len(lines) == 3
    assert lines[1].startswith('"Second Guest"')
    assert lines[2] == (
        '"First Guest","first@example.com","","2030-01-01 08:00:00","Acme","","Yes"'
    )


def test_event_analytics_endpoint(client, session):
    owner, owner_headers = _make_user(session, "owner@example.com")
    _, other_headers = _make_user(session, "other@example.com")
    _, staff_headers = _make_user(session, "staff@example.com", role=STAFF)
    event = _make_event(session, owner)
    crud.create_rsvp(session, event=event, name="Guest", email="guest@example.com")
    crud.record_event_view(session, event, source="social")
    crud.record_event_view(session, event, source="social")
    session.commit()

    response = client.get(f"/api/events/{event.id}/analytics?range=7d", headers=owner_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["total_views"] == 2
    assert body["confirmed_rsvps"] == 1
    assert body["conversion_rate"] == 50.0
    assert body["views_by_source"] == {"social": 2}
    assert len(body["rsvp_trends"]) == 7

    assert client.get(f"/api/events/{event.id}/analytics", headers=staff_headers).status_code == 200
    assert client.get(f"/api/events/{event.id}/analytics", headers=other_headers).status_code == 403
    bad_range = client.get(
        f"/api/events/{event.id}/analytics?range=1y", headers=owner_headers
    )
    assert bad_range.status_code == 400


def test_dashboard_summarizes_owned_events(client, session):
    owner, owner_headers = _make_user(session, "owner@example.com")
    other, _ = _make_user(session, "other@example.com")
    _, admin_headers = _make_user(session, "admin@example.com", role=ADMIN)
    now = utcnow().replace(microsecond=0)
    upcoming = _make_event(session, owner, title="Soon", start_date=now + timedelta(days=1))
    _make_event(
        session,
        owner,
        title="Done",
        start_date=now - timedelta(days=3),
        end_date=now - timedelta(days=2),
        is_published=False,
    )
    _make_event(session, other, title="Elsewhere")
    crud.create_rsvp(session, event=upcoming, name="Guest", email="guest@example.com")
    for _ in range(3):
        crud.record_event_view(session, upcoming)
    session.commit()

    response = client.get("/api/dashboard", headers=owner_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["user"]["role"] == EVENT_OWNER
    assert body["total_events"] == 2
    assert body["published_events"] == 1
    assert body["total_rsvps"] == 1
    assert [e["title"] for e in body["upcoming_events"]] == ["Soon"]
    assert [e["title"] for e in body["categorized_events"]["past"]] == ["Done"]
    assert [e["title"] for e in body["recent_events"]] == ["Done"]
    analytics = body["analytics"]
    assert analytics["total_views"] == 3
    assert analytics["conversion_rate"] == 33
    assert len(analytics["rsvp_trends"]) == settings.analytics_window_days
    assert analytics["rsvp_trends"][-1]["confirmed"] == 1
    assert analytics["view_trends"][-1]["views"] == 3

    admin_view = client.get("/api/dashboard", headers=admin_headers).json()
    assert admin_view["total_events"] == 3
    assert admin_view["user"]["role"] == ADMIN


# -------- Profile and administration --------


def test_profile_update_writes_audit_log(client, session):
    owner, headers = _make_user(session, "owner@example.com")
    _make_event(session, owner)

    profile = client.get("/api/dashboard/profile", headers=headers).json()
    assert profile["email"] == "owner@example.com"
    assert profile["event_count"] == 1

    updated = client.put("/api/dashboard/profile", headers=headers, json={"name": "New Name"})
    assert updated.status_code == 200
    assert updated.json()["name"] == "New Name"

    assert client.put("/api/dashboard/profile", headers=headers, json={"name": ""}).status_code == 400

    session.expire_all()
    entry = session.query(AuditLog).one()
    assert entry.action == "UPDATE_PROFILE"
    assert entry.user_id == owner.id
    assert entry.details == {"field": "name", "old_value": "Owner", "new_value": "New Name"}


def test_admin_endpoints_require_admin(client, session):
    _, owner_headers = _make_user(session, "owner@example.com")
    _, staff_headers = _make_user(session, "staff@example.com", role=STAFF)
    for headers in (owner_headers, staff_headers):
        assert client.get("/api/admin/users", headers=headers).status_code == 403
        assert client.get("/api/admin/audit-logs", headers=headers).status_code == 403
    assert client.get("/api/admin/users").status_code == 401


def test_admin_updates_role_and_audits(client, session):
    admin, admin_headers = _make_user(session, "admin@example.com", role=ADMIN)
    owner, _ = _make_user(session, "owner@example.com")
    _make_event(session, owner)

    users = client.get("/api/admin/users", headers=admin_headers).json()
    counts = {user["email"]: user["event_count"] for user in users}
    assert counts == {"admin@example.com": 0, "owner@example.com": 1}

    response = client.post(
        "/api/admin/users/update-role",
        headers=admin_headers,
        json={"user_id": owner.id, "role": STAFF},
    )
    assert response.status_code == 200
    assert response.json()["role"] == STAFF

    missing = client.post(
        "/api/admin/users/update-role",
        headers=admin_headers,
        json={"user_id": "missing", "role": STAFF},
    )
    assert missing.status_code == 404
    bad_role = client.post(
        "/api/admin/users/update-role",
        headers=admin_headers,
        json={"user_id": owner.id, "role": "ROOT"},
    )
    assert bad_role.status_code == 400

    logs = client.get("/api/admin/audit-logs", headers=admin_headers).json()
    assert len(logs) == 1
    assert logs[0]["action"] == "UPDATE_ROLE"
    assert logs[0]["details"] == {"previous_role": EVENT_OWNER, "new_role": STAFF}
    assert logs[0]["user"] == {"name": admin.name, "email": "admin@example.com"}
    assert logs[0]["target_user"]["email"] == "owner@example.com"


def test_role_change_survives_audit_failure(client, session, monkeypatch):
    _, admin_headers = _make_user(session, "admin@example.com", role=ADMIN)
    owner, _ = _make_user(session, "owner@example.com")
    owner_id = owner.id

    def _boom(*_args, **_kwargs):
        raise SQLAlchemyError("audit table unavailable")

    monkeypatch.setattr(crud, "create_audit_log", _boom)
    response = client.post(
        "/api/admin/users/update-role",
        headers=admin_headers,
        json={"user_id": owner_id, "role": ADMIN},
    )
    assert response.status_code == 200

    session.expire_all()
    assert session.get(User, owner_id).role == ADMIN
    assert session.query(AuditLog).count() == 0
