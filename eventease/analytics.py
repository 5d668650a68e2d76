"""Dashboard aggregation over already-fetched rows.

Nothing in here touches the database: callers hand in events, counts and
``(created_at, ...)`` tuples, and get JSON-ready dicts back. Days are UTC
calendar days.
"""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from datetime import date, datetime, timedelta
from typing import Any, Literal

from .models import Event
from .utils import isoformat_or_none

EventStatus = Literal["past", "ongoing", "upcoming"]

SECONDS_PER_DAY = 60 * 60 * 24
EVENT_ANALYTICS_RANGES = {"7d": 7, "30d": 30, "all": 90}
RSVP_STATUS_KEYS = {
    "CONFIRMED": "confirmed",
    "PENDING": "pending",
    "DECLINED": "declined",
}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def conversion_rate(rsvps: int, views: int) -> int:
    """Whole-number percentage of views that turned into RSVPs, in [0, 100]."""
    if views <= 0 or rsvps <= 0:
        return 0
    return min(_round_half_up(rsvps * 100 / views), 100)


def categorize_event(
    start: datetime, end: datetime | None, now: datetime
) -> EventStatus:
    if end is not None and end < now:
        return "past"
    if start > now:
        return "upcoming"
    return "ongoing"


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta.total_seconds() / SECONDS_PER_DAY)


def window_days(now: datetime, days: int) -> list[date]:
    """The ``days`` calendar days ending today, oldest first."""
    today = now.date()
    return [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


def window_start(now: datetime, days: int) -> datetime:
    first_day = window_days(now, days)[0]
    return datetime.combine(first_day, datetime.min.time())


def daily_rsvp_trends(
    rows: Iterable[tuple[datetime, str]], *, now: datetime, days: int
) -> list[dict[str, Any]]:
    """Bucket ``(created_at, status)`` rows per day, split by status."""
    buckets: dict[date, Counter] = {day: Counter() for day in window_days(now, days)}
    for created_at, status in rows:
        bucket = buckets.get(created_at.date())
        if bucket is None:
            continue
        bucket[RSVP_STATUS_KEYS.get(status, "other")] += 1
        bucket["total"] += 1
    return [
        {
            "date": day.isoformat(),
            "confirmed": counts["confirmed"],
            "pending": counts["pending"],
            "declined": counts["declined"],
            "total": counts["total"],
        }
        for day, counts in buckets.items()
    ]


def daily_view_trends(
    timestamps: Iterable[datetime], *, now: datetime, days: int
) -> list[dict[str, Any]]:
    buckets: dict[date, int] = {day: 0 for day in window_days(now, days)}
    for created_at in timestamps:
        day = created_at.date()
        if day in buckets:
            buckets[day] += 1
    return [{"date": day.isoformat(), "views": views} for day, views in buckets.items()]


def _event_summary(
    event: Event,
    *,
    now: datetime,
    rsvp_count: int,
    view_count: int,
) -> dict[str, Any]:
    status = categorize_event(event.start_date, event.end_date, now)
    return {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "start_date": event.start_date.isoformat(),
        "end_date": isoformat_or_none(event.end_date),
        "is_published": event.is_published,
        "user_id": event.user_id,
        "created_at": event.created_at.isoformat(),
        "updated_at": event.updated_at.isoformat(),
        "status": status,
        "days_until_start": _ceil_days(event.start_date - now),
        "days_since_end": _ceil_days(now - event.end_date) if event.end_date else None,
        "counts": {"rsvps": rsvp_count, "views": view_count},
    }


def build_dashboard(
    events: Sequence[Event],
    *,
    rsvp_counts: Mapping[str, int],
    view_counts: Mapping[str, int],
    rsvp_rows: Iterable[tuple[datetime, str]],
    view_timestamps: Iterable[datetime],
    now: datetime,
    role: str,
    window: int = 30,
    recent_limit: int = 5,
) -> dict[str, Any]:
    categorized: dict[str, list[tuple[Event, dict[str, Any]]]] = {
        "past": [],
        "ongoing": [],
        "upcoming": [],
    }
    for event in events:
        summary = _event_summary(
            event,
            now=now,
            rsvp_count=rsvp_counts.get(event.id, 0),
            view_count=view_counts.get(event.id, 0),
        )
        categorized[summary["status"]].append((event, summary))

    categorized["past"].sort(key=lambda pair: pair[0].end_date, reverse=True)
    categorized["ongoing"].sort(key=lambda pair: pair[0].start_date, reverse=True)
    categorized["upcoming"].sort(key=lambda pair: pair[0].start_date)

    recent = sorted(
        categorized["past"] + categorized["ongoing"],
        key=lambda pair: pair[0].updated_at,
        reverse=True,
    )[:recent_limit]
    upcoming = categorized["upcoming"][:recent_limit]

    event_stats = []
    for event in events:
        views = view_counts.get(event.id, 0)
        rsvps = rsvp_counts.get(event.id, 0)
        event_stats.append(
            {
                "id": event.id,
                "title": event.title,
                "views": views,
                "rsvps": rsvps,
                "conversion_rate": conversion_rate(rsvps, views),
            }
        )

    total_views = sum(view_counts.get(event.id, 0) for event in events)
    total_rsvps = sum(rsvp_counts.get(event.id, 0) for event in events)

    return {
        "user": {"role": role},
        "recent_events": [summary for _, summary in recent],
        "upcoming_events": [summary for _, summary in upcoming],
        "categorized_events": {
            key: [summary for _, summary in pairs]
            for key, pairs in categorized.items()
        },
        "total_events": len(events),
        "published_events": sum(1 for event in events if event.is_published),
        "total_rsvps": total_rsvps,
        "analytics": {
            "total_views": total_views,
            "total_rsvps": total_rsvps,
            "conversion_rate": conversion_rate(total_rsvps, total_views),
            "active_events": len(categorized["ongoing"]),
            "rsvp_trends": daily_rsvp_trends(rsvp_rows, now=now, days=window),
            "view_trends": daily_view_trends(view_timestamps, now=now, days=window),
            "event_stats": event_stats,
        },
    }


def build_event_analytics(
    event: Event,
    *,
    rsvp_rows: Sequence[tuple[datetime, str]],
    view_rows: Sequence[tuple[datetime, str]],
    now: datetime,
    time_range: str = "30d",
) -> dict[str, Any]:
    """Per-event charts: ``rsvp_rows`` are (created_at, status), ``view_rows``
    are (created_at, source), both covering the event's whole history."""
    days = EVENT_ANALYTICS_RANGES.get(time_range)
    if days is None:
        raise ValueError(f"Unknown analytics range: {time_range}")

    total_views = len(view_rows)
    confirmed = sum(1 for _, status in rsvp_rows if status == "CONFIRMED")
    pending = sum(1 for _, status in rsvp_rows if status == "PENDING")
    if total_views:
        rate = min(round(confirmed * 100 / total_views, 1), 100.0)
    else:
        rate = 0.0

    return {
        "event_id": event.id,
        "title": event.title,
        "range": time_range,
        "status": categorize_event(event.start_date, event.end_date, now),
        "total_rsvps": len(rsvp_rows),
        "confirmed_rsvps": confirmed,
        "pending_rsvps": pending,
        "total_views": total_views,
        "conversion_rate": rate,
        "views_by_source": dict(Counter(source for _, source in view_rows)),
        "rsvp_trends": daily_rsvp_trends(rsvp_rows, now=now, days=days),
        "view_trends": daily_view_trends(
            (created_at for created_at, _ in view_rows), now=now, days=days
        ),
    }
