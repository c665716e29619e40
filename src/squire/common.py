"""Common helpers for timestamps shared by task records and observability."""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as ISO-8601, assuming UTC for naive values."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


def utc_now_iso() -> str:
    """Current UTC timestamp in the ISO form stored on task records."""

    return to_iso(utc_now())


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def seconds_since(value: str | None, *, now: datetime | None = None) -> float | None:
    """Elapsed seconds since an ISO timestamp, or ``None`` when unset or unparsable."""

    if not value:
        return None
    try:
        started = from_iso(value)
    except ValueError:
        return None
    return ((now or utc_now()) - started).total_seconds()
