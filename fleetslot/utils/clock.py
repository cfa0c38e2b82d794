"""UTC timestamp helpers shared by the store and services."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_storage(value: datetime) -> str:
    # Fixed-width ISO text so SQL string comparison orders like the datetimes.
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_storage(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))
