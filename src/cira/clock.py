"""Timestamp helpers shared by the local store and the wire models.

All timestamps are timezone-aware UTC. Stored text uses one fixed ISO-8601
shape (microsecond precision, ``+00:00`` offset) so SQLite can compare
them lexicographically.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

_ONE_TICK = timedelta(microseconds=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp (``Z`` suffix accepted) into UTC.

    Raises:
        ValueError: If the string is not ISO-8601
    """
    if isinstance(value, datetime):
        return as_utc(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def format_timestamp(value: datetime) -> str:
    """Canonical storage form: ``2026-01-19T10:00:00.000000+00:00``."""
    return as_utc(value).isoformat(timespec="microseconds")


def next_timestamp(previous: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    """Return a timestamp strictly greater than ``previous``.

    Wall clocks can step backwards; ``updated_at`` must not.
    """
    current = as_utc(now) if now is not None else utc_now()
    if previous is not None and current <= as_utc(previous):
        return as_utc(previous) + _ONE_TICK
    return current
