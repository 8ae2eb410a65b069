"""
Shipping rate cache repository (persistence).

Entries are keyed by the composite cache key from `domain.shipping`. Stale
entries are filtered on read; `replace_shipping_rates` swaps all entries for a
key in one transaction so readers never see a half-written set.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Mapping, Sequence

from supabase import Client

from domain.listing import Dimensions
from domain.shipping import RateCacheEntry, RateQuote
from repositories.rpc import call_atomic
from repositories.serialization import money, parse_utc_datetime, to_iso_utc

_RATE_CACHE_TABLE: str = "shipping_rate_cache"


def _row_to_entry(row: Mapping[str, Any]) -> RateCacheEntry:
    return RateCacheEntry(
        cache_key=str(row["cache_key"]),
        origin_postal_code=str(row["origin_postal_code"]),
        destination_postal_code=str(row["destination_postal_code"]),
        weight=Decimal(str(row["weight"])),
        dimensions=Dimensions(
            length=Decimal(str(row["length"])),
            width=Decimal(str(row["width"])),
            height=Decimal(str(row["height"])),
            unit=str(row.get("dimension_unit") or "in"),
        ),
        quote=RateQuote(
            carrier=str(row["carrier"]),
            service=str(row["service"]),
            amount=money(row["amount"]),
            transit_days=row.get("transit_days"),
            currency=str(row.get("currency") or "USD"),
        ),
        expires_at=parse_utc_datetime(row["expires_at"]),
    )


def _entry_to_payload(entry: RateCacheEntry) -> dict[str, Any]:
    return {
        "cache_key": entry.cache_key,
        "origin_postal_code": entry.origin_postal_code,
        "destination_postal_code": entry.destination_postal_code,
        "weight": str(entry.weight),
        "length": str(entry.dimensions.length),
        "width": str(entry.dimensions.width),
        "height": str(entry.dimensions.height),
        "dimension_unit": entry.dimensions.unit,
        "carrier": entry.quote.carrier,
        "service": entry.quote.service,
        "amount": str(entry.quote.amount),
        "transit_days": entry.quote.transit_days,
        "currency": entry.quote.currency,
        "expires_at": to_iso_utc(entry.expires_at, name="expires_at"),
    }


class SupabaseRateCacheRepository:
    def __init__(self, client: Client) -> None:
        self._client = client

    def get_valid(self, cache_key: str, now: datetime) -> List[RateCacheEntry]:
        response = (
            self._client.table(_RATE_CACHE_TABLE)
            .select("*")
            .eq("cache_key", cache_key)
            .gt("expires_at", to_iso_utc(now, name="now"))
            .execute()
        )
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to read shipping rate cache: {error}")

        rows = getattr(response, "data", None) or []
        return [_row_to_entry(row) for row in rows]

    def replace(self, cache_key: str, entries: Sequence[RateCacheEntry]) -> None:
        call_atomic(
            self._client,
            "replace_shipping_rates",
            {"p_cache_key": cache_key, "p_entries": [_entry_to_payload(e) for e in entries]},
        )
