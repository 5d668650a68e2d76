"""FastAPI application for EventEase."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
import tomllib
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .analytics import build_dashboard, build_event_analytics, window_start
from .auth import (
    ADMIN,
    AuthError,
    UserExistsError,
    authenticate,
    can_read_all,
    create_session,
    get_session_by_token,
    register_user,
    revoke_session,
)
from .config import settings
from .crud import (
    create_event,
    create_rsvp,
    delete_event,
    event_counts_by_user,
    get_event,
    list_audit_logs,
    list_event_rsvps,
    list_events,
    list_users,
    record_audit_log,
    rsvp_activity,
    rsvp_counts,
    set_user_role,
    toggle_event_published,
    update_event,
    update_user_name,
    view_activity,
    view_counts,
)
from .database import get_db
from .exports import export_rsvps_csv
from .models import RSVP, AuditLog, Event, User
from .models import Session as UserSession
from .storage import init_db
from .utils import isoformat_or_none, utcnow
from .validators import (
    EventCreatePayload,
    EventUpdatePayload,
    ProfileUpdatePayload,
    RoleUpdatePayload,
    SignInPayload,
    SignUpPayload,
    format_validation_errors,
    parse_custom_fields,
    validate_rsvp,
)
from .web import register_web_routes, templates

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")

# Columns that cannot be cleared through a PATCH.
_REQUIRED_EVENT_FIELDS = ("title", "start_date", "is_published")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("eventease")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield


app = FastAPI(title="EventEase", version=APP_VERSION, lifespan=lifespan)
templates.env.globals["app_version"] = APP_VERSION

register_web_routes(app)


def _is_api(request: Request) -> bool:
    return request.url.path.startswith("/api/")


def _render_error(request: Request, status_code: int, message: str | None):
    return templates.TemplateResponse(
        request,
        "error.html",
        {
            "request": request,
            "status_code": status_code,
            "error_message": message or "Something went wrong.",
        },
        status_code=status_code,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Bare text for the API, friendly pages everywhere else."""
    if _is_api(request):
        detail = exc.detail if isinstance(exc.detail, str) else ""
        return PlainTextResponse(
            detail, status_code=exc.status_code, headers=exc.headers
        )
    detail = exc.detail if isinstance(exc.detail, str) else "Something went wrong."
    return _render_error(request, exc.status_code, detail)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    if _is_api(request):
        return PlainTextResponse(detail, status_code=status)
    return _render_error(request, status, detail)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    if _is_api(request):
        return PlainTextResponse(
            _invalid_request_message(exc), status_code=400
        )
    return _render_error(
        request,
        400,
        "Some of the fields were invalid. Please double-check and try again.",
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    if _is_api(request):
        return PlainTextResponse("Internal server error", status_code=500)
    return _render_error(
        request,
        500,
        "We hit a snag while processing that request. Please try again.",
    )


def _invalid_request_message(exc: ValidationError | RequestValidationError) -> str:
    return "Invalid request data: " + "; ".join(format_validation_errors(exc))


# -------- Sessions and guards --------


def _get_bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _request_token(request: Request) -> str | None:
    return request.cookies.get(settings.session_cookie_name) or _get_bearer_token(
        request
    )


def current_session(
    request: Request, db: Session = Depends(get_db)
) -> UserSession | None:
    return get_session_by_token(db, _request_token(request))


def require_user(
    user_session: UserSession | None = Depends(current_session),
) -> User:
    if user_session is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_session.user


def require_admin(user: User = Depends(require_user)) -> User:
    if user.role != ADMIN:
        raise HTTPException(status_code=403, detail="Forbidden")
    return user


def _ensure_event(db: Session, event_id: str) -> Event:
    event = get_event(db, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


def _require_owner(event: Event, user: User) -> None:
    if event.user_id != user.id:
        raise HTTPException(
            status_code=403, detail="You do not have permission to modify this event"
        )


def _require_owner_or_reader(event: Event, user: User) -> None:
    if event.user_id != user.id and not can_read_all(user):
        raise HTTPException(status_code=403, detail="Forbidden")


def _set_session_cookie(response: Response, user_session: UserSession) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        user_session.token,
        max_age=int(settings.session_max_age.total_seconds()),
        httponly=True,
        samesite="lax",
        secure=settings.session_cookie_secure,
    )


def _client_host(request: Request) -> str | None:
    return request.client.host if request.client else None


# -------- Serializers --------


def _serialize_user(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "email_verified": user.email_verified,
        "image": user.image,
        "role": user.role,
        "created_at": user.created_at.isoformat(),
        "updated_at": user.updated_at.isoformat(),
    }


def _serialize_session(user_session: UserSession, *, include_token: bool = False):
    data = {
        "id": user_session.id,
        "user_id": user_session.user_id,
        "expires_at": user_session.expires_at.isoformat(),
        "created_at": user_session.created_at.isoformat(),
        "updated_at": user_session.updated_at.isoformat(),
    }
    if include_token:
        data["token"] = user_session.token
    return data


def _serialize_event(
    event: Event,
    *,
    rsvp_count: int | None = None,
    view_count: int | None = None,
    include_owner: bool = False,
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "start_date": event.start_date.isoformat(),
        "end_date": isoformat_or_none(event.end_date),
        "is_published": event.is_published,
        "custom_fields": [
            field.model_dump(exclude_none=True)
            for field in parse_custom_fields(event.custom_fields)
        ],
        "user_id": event.user_id,
        "created_at": event.created_at.isoformat(),
        "updated_at": event.updated_at.isoformat(),
    }
    if rsvp_count is not None:
        data["rsvp_count"] = rsvp_count
    if view_count is not None:
        data["view_count"] = view_count
    if include_owner and event.user is not None:
        data["user"] = {"name": event.user.name, "email": event.user.email}
    return data


def _serialize_rsvp(rsvp: RSVP) -> dict[str, Any]:
    return {
        "id": rsvp.id,
        "event_id": rsvp.event_id,
        "name": rsvp.name,
        "email": rsvp.email,
        "phone": rsvp.phone,
        "status": rsvp.status,
        "responses": rsvp.responses or {},
        "created_at": rsvp.created_at.isoformat(),
        "updated_at": rsvp.updated_at.isoformat(),
    }


def _person(user: User | None) -> dict[str, str] | None:
    if user is None:
        return None
    return {"name": user.name, "email": user.email}


def _serialize_audit_log(entry: AuditLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "action": entry.action,
        "user_id": entry.user_id,
        "target_user_id": entry.target_user_id,
        "details": entry.details or {},
        "created_at": entry.created_at.isoformat(),
        "user": _person(entry.user),
        "target_user": _person(entry.target_user),
    }


# -------- Auth --------


@app.post("/api/auth/sign-up", status_code=201)
def api_sign_up(
    payload: SignUpPayload,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    try:
        user = register_user(
            db, name=payload.name, email=payload.email, password=payload.password
        )
    except UserExistsError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    user_session = create_session(
        db,
        user,
        ip_address=_client_host(request),
        user_agent=request.headers.get("user-agent"),
    )
    logger.info("Registered user %s", user.id)
    _set_session_cookie(response, user_session)
    return {
        "user": _serialize_user(user),
        "session": _serialize_session(user_session, include_token=True),
    }


@app.post("/api/auth/sign-in")
def api_sign_in(
    payload: SignInPayload,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    try:
        user = authenticate(db, email=payload.email, password=payload.password)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    user_session = create_session(
        db,
        user,
        ip_address=_client_host(request),
        user_agent=request.headers.get("user-agent"),
    )
    _set_session_cookie(response, user_session)
    return {
        "user": _serialize_user(user),
        "session": _serialize_session(user_session, include_token=True),
    }


@app.post("/api/auth/sign-out")
def api_sign_out(request: Request, response: Response, db: Session = Depends(get_db)):
    revoke_session(db, _request_token(request))
    response.delete_cookie(settings.session_cookie_name)
    return {"success": True}


@app.get("/api/auth/session")
def api_get_session(user_session: UserSession | None = Depends(current_session)):
    if user_session is None:
        return Response(status_code=401)
    return {
        "session": _serialize_session(user_session),
        "user": _serialize_user(user_session.user),
    }


# -------- Events --------


@app.get("/api/events")
def api_list_events(
    user: User = Depends(require_user), db: Session = Depends(get_db)
):
    read_all = can_read_all(user)
    events = list_events(db, user=None if read_all else user)
    counts = rsvp_counts(db, [event.id for event in events])
    return [
        _serialize_event(
            event, rsvp_count=counts.get(event.id, 0), include_owner=read_all
        )
        for event in events
    ]


@app.post("/api/events", status_code=201)
def api_create_event(
    payload: EventCreatePayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    data = payload.model_dump(mode="json", include={"custom_fields"})
    event = create_event(
        db,
        owner=user,
        title=payload.title,
        description=payload.description,
        location=payload.location,
        start_date=payload.start_date,
        end_date=payload.end_date,
        custom_fields=data["custom_fields"],
        is_published=payload.is_published,
    )
    return _serialize_event(event, rsvp_count=0)


@app.get("/api/events/{event_id}")
def api_get_event(
    event_id: str,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    if event.user_id == user.id or can_read_all(user):
        return _serialize_event(
            event,
            rsvp_count=rsvp_counts(db, [event.id]).get(event.id, 0),
            view_count=view_counts(db, [event.id]).get(event.id, 0),
            include_owner=True,
        )
    if not event.is_published:
        raise HTTPException(status_code=404, detail="Event not found")
    return _serialize_event(event)


@app.patch("/api/events/{event_id}")
def api_update_event(
    event_id: str,
    payload: EventUpdatePayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_owner(event, user)
    data = payload.model_dump(mode="json", exclude_unset=True)
    for key in _REQUIRED_EVENT_FIELDS:
        if key in data and data[key] is None:
            data.pop(key)
    # Dates come back from the json dump as strings; use the parsed values.
    for key in ("start_date", "end_date"):
        if key in data:
            data[key] = getattr(payload, key)
    try:
        event = update_event(db, event, **data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _serialize_event(event)


@app.post("/api/events/{event_id}/publish")
def api_toggle_publish(
    event_id: str,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_owner(event, user)
    event = toggle_event_published(db, event)
    return _serialize_event(event)


@app.delete("/api/events/{event_id}", status_code=204)
def api_delete_event(
    event_id: str,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_owner(event, user)
    delete_event(db, event)
    logger.info("User %s deleted event %s", user.id, event_id)
    return Response(status_code=204)


@app.get("/api/events/{event_id}/rsvps")
def api_list_event_rsvps(
    event_id: str,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_owner(event, user)
    return [_serialize_rsvp(rsvp) for rsvp in list_event_rsvps(db, event)]


@app.get("/api/events/{event_id}/rsvps/export")
def api_export_event_rsvps(
    event_id: str,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_owner(event, user)
    filename, content = export_rsvps_csv(event, list_event_rsvps(db, event))
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(content=content, media_type="text/csv", headers=headers)


@app.post("/api/events/{event_id}/rsvps", status_code=201)
def api_create_rsvp(
    event_id: str,
    data: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    if not event.is_published:
        raise HTTPException(status_code=403, detail="Event is not published")
    try:
        cleaned = validate_rsvp(parse_custom_fields(event.custom_fields), data)
    except ValidationError as exc:
        raise HTTPException(
            status_code=400, detail=_invalid_request_message(exc)
        ) from exc
    rsvp = create_rsvp(
        db,
        event=event,
        name=cleaned["name"],
        email=cleaned["email"],
        phone=cleaned.get("phone"),
        responses=cleaned["responses"],
    )
    return _serialize_rsvp(rsvp)


@app.get("/api/events/{event_id}/analytics")
def api_event_analytics(
    event_id: str,
    time_range: str = Query("30d", alias="range"),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_owner_or_reader(event, user)
    try:
        return build_event_analytics(
            event,
            rsvp_rows=rsvp_activity(db, [event.id]),
            view_rows=view_activity(db, [event.id]),
            now=utcnow(),
            time_range=time_range,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# -------- Dashboard and profile --------


@app.get("/api/dashboard")
def api_dashboard(user: User = Depends(require_user), db: Session = Depends(get_db)):
    events = list_events(db, user=None if can_read_all(user) else user)
    event_ids = [event.id for event in events]
    now = utcnow()
    since = window_start(now, settings.analytics_window_days)
    return build_dashboard(
        events,
        rsvp_counts=rsvp_counts(db, event_ids),
        view_counts=view_counts(db, event_ids),
        rsvp_rows=rsvp_activity(db, event_ids, since=since),
        view_timestamps=[
            created_at for created_at, _ in view_activity(db, event_ids, since=since)
        ],
        now=now,
        role=user.role,
        window=settings.analytics_window_days,
        recent_limit=settings.recent_events_limit,
    )


def _profile(db: Session, user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "created_at": user.created_at.isoformat(),
        "event_count": event_counts_by_user(db).get(user.id, 0),
    }


@app.get("/api/dashboard/profile")
def api_get_profile(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return _profile(db, user)


@app.put("/api/dashboard/profile")
def api_update_profile(
    payload: ProfileUpdatePayload,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    previous = update_user_name(db, user, payload.name)
    db.commit()
    record_audit_log(
        db,
        action="UPDATE_PROFILE",
        actor_id=user.id,
        target_user_id=user.id,
        details={"field": "name", "old_value": previous, "new_value": payload.name},
    )
    return _profile(db, user)


# -------- Administration --------


@app.get("/api/admin/users")
def api_admin_list_users(
    _: User = Depends(require_admin), db: Session = Depends(get_db)
):
    counts = event_counts_by_user(db)
    return [
        {**_serialize_user(user), "event_count": counts.get(user.id, 0)}
        for user in list_users(db)
    ]


@app.post("/api/admin/users/update-role")
def api_admin_update_role(
    payload: RoleUpdatePayload,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    target = db.get(User, payload.user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    try:
        previous = set_user_role(db, target, payload.role)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    logger.info(
        "Admin %s changed role of %s from %s to %s",
        admin.id,
        target.id,
        previous,
        payload.role,
    )
    record_audit_log(
        db,
        action="UPDATE_ROLE",
        actor_id=admin.id,
        target_user_id=target.id,
        details={"previous_role": previous, "new_role": payload.role},
    )
    return _serialize_user(target)


@app.get("/api/admin/audit-logs")
def api_admin_audit_logs(
    _: User = Depends(require_admin), db: Session = Depends(get_db)
):
    return [_serialize_audit_log(entry) for entry in list_audit_logs(db)]
