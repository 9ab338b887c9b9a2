"""Lenient parsing helpers for vendor payloads."""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any


def coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def coerce_date(value: Any) -> date | None:
    """Parse a date from ISO text or datetime; unparsable values become None."""
    if value is None:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    dt = coerce_datetime(value)
    if dt is not None:
        return dt.date()
    if isinstance(value, str):
        text = value.strip()
        if len(text) >= 10:
            try:
                return date.fromisoformat(text[:10])
            except ValueError:
                return None
    return None


def coerce_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def coerce_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def format_timestamp(value: datetime | None) -> str | None:
    """Render a UTC ISO-8601 timestamp with a trailing Z for vendor query strings."""
    if value is None:
        return None
    as_utc = value.astimezone(UTC)
    return as_utc.replace(microsecond=0).isoformat().replace("+00:00", "Z")
