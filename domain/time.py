"""
Domain time utilities (pure).

The default clock used by the services, plus the UTC check applied to every
timestamp that enters the domain. Services accept a `clock` callable so tests
can pin "now".
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def require_utc_timestamp(name: str, value: datetime) -> None:
    """Raise ValueError unless `value` is timezone-aware with a zero UTC offset."""

    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{name} must be timezone-aware (UTC)")
    if value.utcoffset() != timedelta(0):
        raise ValueError(f"{name} must be a UTC timestamp (offset 0)")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
