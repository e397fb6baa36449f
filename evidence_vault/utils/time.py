"""Timestamp helpers shared by the ledger and delivery checks."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Return the current UTC time truncated to millisecond precision.

    Ledger hashes embed an ISO-8601 timestamp with milliseconds, so stored
    values must not carry more precision than the hash input does.
    """
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso_millis(value: datetime) -> str:
    """Format as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    value = as_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def is_past(value: datetime | None, now: datetime | None = None) -> bool:
    if value is None:
        return False
    return as_utc(value) < (now or utc_now())


def days_from(value: datetime, days: int) -> datetime:
    return as_utc(value) + timedelta(days=days)
