"""Utility helpers for EventEase."""

from __future__ import annotations

from datetime import UTC, datetime
import re

_filename_invalid = re.compile(r"[^a-z0-9]", re.IGNORECASE | re.ASCII)


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Convert aware datetimes to naive UTC; naive values are assumed UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def isoformat_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def filename_stem(value: str) -> str:
    """Replace every non-alphanumeric character with a dash and lower-case it."""
    return _filename_invalid.sub("-", value or "").lower()


def normalize_email(value: str) -> str:
    return (value or "").strip().lower()
