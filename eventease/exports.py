"""CSV export of an event's RSVPs."""

from __future__ import annotations

import csv
import io
from collections.abc import Sequence
from typing import Any

from .models import RSVP, Event
from .utils import filename_stem
from .validators import CustomField, parse_custom_fields

BASE_HEADERS = ["Name", "Email", "Phone", "Registration Date"]


def _format_response(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    return str(value)


def rsvp_row(rsvp: RSVP, custom_fields: Sequence[CustomField]) -> list[str]:
    responses = rsvp.responses or {}
    return [
        rsvp.name,
        rsvp.email,
        rsvp.phone or "",
        rsvp.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        *(_format_response(responses.get(field.id)) for field in custom_fields),
    ]


def export_rsvps_csv(event: Event, rsvps: Sequence[RSVP]) -> tuple[str, str]:
    """Return ``(filename, content)`` with one header line plus one line per RSVP.

    Data cells are always quoted; the header row is written bare.
    """
    custom_fields = parse_custom_fields(event.custom_fields)
    buffer = io.StringIO()
    buffer.write(",".join(BASE_HEADERS + [field.label for field in custom_fields]))
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for rsvp in rsvps:
        buffer.write("\n")
        writer.writerow(rsvp_row(rsvp, custom_fields))
    content = buffer.getvalue().rstrip("\n")
    filename = f"{filename_stem(event.title)}-rsvps.csv"
    return filename, content
