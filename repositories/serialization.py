"""
Row (de)serialization helpers shared by the Supabase repositories.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from domain.money import to_money
from domain.time import require_utc_timestamp


def to_iso_utc(dt: datetime, *, name: str) -> str:
    """Serialize a UTC datetime to ISO-8601 (timezone-aware, offset 0)."""

    require_utc_timestamp(name, dt)
    return dt.astimezone(timezone.utc).isoformat()


def optional_iso_utc(dt: Optional[datetime], *, name: str) -> Optional[str]:
    return to_iso_utc(dt, name=name) if dt is not None else None


def parse_utc_datetime(value: Any) -> datetime:
    """
    Parse a Supabase timestamp into a timezone-aware UTC datetime.

    Supabase commonly returns ISO-8601 strings, sometimes with a trailing 'Z'.
    """

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise TypeError(f"Unsupported timestamp type: {type(value)!r}")

    if dt.tzinfo is None or dt.utcoffset() is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def optional_datetime(value: Any) -> Optional[datetime]:
    return parse_utc_datetime(value) if value else None


def optional_uuid(value: Any) -> Optional[UUID]:
    return UUID(str(value)) if value else None


def uuid_str(value: Optional[UUID]) -> Optional[str]:
    return str(value) if value is not None else None


def money(value: Any) -> Decimal:
    return to_money(value if value is not None else 0)


def optional_decimal(value: Any) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None
