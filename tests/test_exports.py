from __future__ import annotations

from datetime import datetime

from eventease.exports import export_rsvps_csv
from eventease.models import RSVP, Event


def _event(**overrides) -> Event:
    values = {
        "id": "evt",
        "title": "Tech Summit 2030!",
        "start_date": datetime(2030, 1, 1, 9, 0),
        "custom_fields": [
            {"id": "company", "label": "Company", "type": "text"},
            {"id": "newsletter", "label": "Newsletter", "type": "checkbox"},
        ],
    }
    values.update(overrides)
    return Event(**values)


def _rsvp(name: str, **overrides) -> RSVP:
    values = {
        "name": name,
        "email": f"{name.split()[0].lower()}@example.com",
        "phone": None,
        "responses": {},
        "created_at": datetime(2030, 1, 2, 3, 4, 5),
    }
    values.update(overrides)
    return RSVP(**values)


def test_export_quotes_every_cell_and_keeps_field_order():
    rsvps = [
        _rsvp(
            'Ada "The Countess" Lovelace',
            phone="555-0100",
            responses={"company": "Analytical, Ltd", "newsletter": True},
        ),
        _rsvp("Grace Hopper", responses={"newsletter": False}),
    ]

    filename, content = export_rsvps_csv(_event(), rsvps)
    lines = content.split("\n")

    assert filename == "tech-summit-2030--rsvps.csv"
    assert len(lines) == 3
    assert lines[0] == "Name,Email,Phone,Registration Date,Company,Newsletter"
    assert lines[1] == (
        '"Ada ""The Countess"" Lovelace","ada@example.com","555-0100",'
        '"2030-01-02 03:04:05","Analytical, Ltd","Yes"'
    )
    assert lines[2] == (
        '"Grace Hopper","grace@example.com","","2030-01-02 03:04:05","","No"'
    )


def test_export_without_rsvps_is_only_the_header():
    filename, content = export_rsvps_csv(_event(title="Quiet", custom_fields=[]), [])
    assert filename == "quiet-rsvps.csv"
    assert content == "Name,Email,Phone,Registration Date"
