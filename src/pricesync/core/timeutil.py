"""UTC timestamp helpers.

SQLite drops tzinfo on DateTime(timezone=True) columns, so values read
back from the store are naive. Everything inside pricesync is compared
as aware UTC.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime (aware values are converted)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime as ISO 8601 UTC."""
    value = as_utc(value)
    return value.isoformat() if value else None


def parse_iso(value: str | datetime | None) -> datetime | None:
    """Parse an ISO 8601 string (or pass a datetime through) as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(value))
