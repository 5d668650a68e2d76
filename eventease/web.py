"""Public event pages: the view-recording event page and its RSVP form."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from fastapi import Depends, HTTPException, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError
from sqlalchemy.orm import Session

from .crud import create_rsvp, get_event, record_event_view
from .database import get_db
from .models import Event
from .validators import (
    CustomField,
    format_validation_errors,
    parse_custom_fields,
    validate_rsvp,
)

templates = Jinja2Templates(directory=Path(__file__).parent / "templates")


def _form_field_name(field: CustomField) -> str:
    return f"field_{field.id}"


templates.env.globals["form_field_name"] = _form_field_name


def _event_or_404(db: Session, event_id: str) -> Event:
    event = get_event(db, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


def _coerce_form(form, custom_fields: list[CustomField]) -> dict[str, Any]:
    """Turn posted form values into the shape ``validate_rsvp`` expects.

    Empty inputs count as missing; a checkbox is true only when ticked.
    """
    data: dict[str, Any] = {}
    for key in ("name", "email", "phone"):
        value = (form.get(key) or "").strip()
        if value:
            data[key] = value
    responses: dict[str, Any] = {}
    for field in custom_fields:
        raw = form.get(_form_field_name(field))
        if field.type == "checkbox":
            responses[field.id] = raw is not None and raw not in {"", "off", "false"}
            continue
        if raw is None:
            continue
        value = str(raw).strip()
        if value:
            responses[field.id] = value
    data["responses"] = responses
    return data


def _render_event(
    request: Request,
    event: Event,
    *,
    values: dict[str, Any] | None = None,
    errors: list[str] | None = None,
    status_code: int = 200,
):
    return templates.TemplateResponse(
        request,
        "event.html",
        {
            "request": request,
            "event": event,
            "custom_fields": parse_custom_fields(event.custom_fields),
            "values": values or {},
            "errors": errors or [],
        },
        status_code=status_code,
    )


def event_page(event_id: str, request: Request, db: Session = Depends(get_db)):
    """Render the public page; every render of an existing event counts as a view."""
    event = _event_or_404(db, event_id)
    record_event_view(db, event)
    if not event.is_published:
        return templates.TemplateResponse(
            request,
            "event_unpublished.html",
            {"request": request, "event": event},
        )
    return _render_event(request, event)


async def submit_rsvp(event_id: str, request: Request, db: Session = Depends(get_db)):
    event = _event_or_404(db, event_id)
    if not event.is_published:
        raise HTTPException(status_code=403, detail="Event is not published")
    custom_fields = parse_custom_fields(event.custom_fields)
    form = await request.form()
    data = _coerce_form(form, custom_fields)
    try:
        cleaned = validate_rsvp(custom_fields, data)
    except ValidationError as exc:
        return _render_event(
            request,
            event,
            values=dict(form),
            errors=format_validation_errors(exc),
            status_code=400,
        )
    rsvp = create_rsvp(
        db,
        event=event,
        name=cleaned["name"],
        email=cleaned["email"],
        phone=cleaned.get("phone"),
        responses=cleaned["responses"],
    )
    return templates.TemplateResponse(
        request,
        "rsvp_created.html",
        {"request": request, "event": event, "rsvp": rsvp},
    )


def register_web_routes(app):
    """Register web routes on the FastAPI app."""
    app.get("/event/{event_id}", response_class=HTMLResponse)(event_page)
    app.post("/event/{event_id}/rsvp", response_class=HTMLResponse)(submit_rsvp)
