"""
Domain: Shipping parcels, quotes and the rate-cache key (pure).

The cache key is deliberately coarse: origin/destination postal codes plus the
parcels' total weight and aggregate dimensions. Two carts with different item
mixes but the same aggregate weight and box share cached quotes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence

from .listing import Address, Dimensions
from .time import require_utc_timestamp

DIGITAL_CARRIER = "N/A"
DIGITAL_SERVICE = "digital"


@dataclass(frozen=True, slots=True)
class Parcel:
    weight: Decimal
    dimensions: Dimensions
    quantity: int = 1


@dataclass(frozen=True, slots=True)
class RateQuote:
    """A single rate returned by the provider or the cache, in the shop currency."""

    carrier: str
    service: str
    amount: Decimal
    transit_days: Optional[int] = None
    currency: str = "USD"

    @property
    def transit_days_min(self) -> Optional[int]:
        return self.transit_days

    @property
    def transit_days_max(self) -> Optional[int]:
        return self.transit_days + 2 if self.transit_days is not None else None

    @property
    def is_digital(self) -> bool:
        return self.carrier == DIGITAL_CARRIER and self.service == DIGITAL_SERVICE


@dataclass(frozen=True, slots=True)
class RateCacheEntry:
    cache_key: str
    origin_postal_code: str
    destination_postal_code: str
    weight: Decimal
    dimensions: Dimensions
    quote: RateQuote
    expires_at: datetime

    def __post_init__(self) -> None:
        require_utc_timestamp("expires_at", self.expires_at)

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


def digital_rate(currency: str = "USD") -> RateQuote:
    return RateQuote(
        carrier=DIGITAL_CARRIER,
        service=DIGITAL_SERVICE,
        amount=Decimal("0.00"),
        transit_days=0,
        currency=currency,
    )


def normalize_postal_code(postal_code: str) -> str:
    return "".join(postal_code.split()).upper()


def total_weight(parcels: Iterable[Parcel]) -> Decimal:
    total = sum((parcel.weight * parcel.quantity for parcel in parcels), Decimal(0))
    return total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def aggregate_dimensions(parcels: Sequence[Parcel]) -> Dimensions:
    """
    Bounding box for the shipment: longest length, widest width, stacked height.
    Units are taken from the first parcel.
    """

    if not parcels:
        raise ValueError("At least one parcel is required")
    return Dimensions(
        length=max(p.dimensions.length for p in parcels),
        width=max(p.dimensions.width for p in parcels),
        height=sum((p.dimensions.height * p.quantity for p in parcels), Decimal(0)),
        unit=parcels[0].dimensions.unit,
    )


def rate_cache_key(origin: Address, destination: Address, parcels: Sequence[Parcel]) -> str:
    dims = aggregate_dimensions(parcels)
    return "|".join(
        [
            normalize_postal_code(origin.postal_code),
            normalize_postal_code(destination.postal_code),
            f"{total_weight(parcels):f}",
            f"{_fmt(dims.length)}x{_fmt(dims.width)}x{_fmt(dims.height)}{dims.unit}",
        ]
    )


def sort_quotes(quotes: Iterable[RateQuote]) -> List[RateQuote]:
    return sorted(quotes, key=lambda q: (q.amount, q.carrier, q.service))


def _fmt(value: Decimal) -> str:
    return f"{Decimal(value).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP):f}"
