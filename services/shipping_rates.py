"""
Shipping rate resolver.

Read-through cache in front of the shipping-rate provider:

1. Digital-only carts skip the lookup and get one free "digital" option.
2. Otherwise the composite cache key is computed from the normalized postal
   codes, total weight and aggregate dimensions of the parcels.
3. A hit returns the cached quotes sorted by amount.
4. A miss calls the provider (retried once on failure), stores the quotes for
   `rate_cache_ttl` by atomically replacing the entries for that key, and
   returns them sorted by amount.

Staleness is bounded by the TTL alone; nothing invalidates entries early.
"""

from __future__ import annotations

import logging
from typing import List, Sequence
from uuid import UUID, uuid4

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_fixed

from domain.cart import Cart, CartShippingOption
from domain.errors import ExternalServiceError, NotFoundError, ValidationError
from domain.listing import Address
from domain.shipping import (
    Parcel,
    RateCacheEntry,
    RateQuote,
    aggregate_dimensions,
    digital_rate,
    normalize_postal_code,
    rate_cache_key,
    sort_quotes,
    total_weight,
)
from domain.time import Clock, utc_now
from repositories.store import DataStore
from services.gateways import SHIPPING_SERVICE, ShippingRateProvider
from services.settings import EngineSettings

logger = logging.getLogger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ExternalServiceError) and exc.retryable


class ShippingRateResolver:
    def __init__(
        self,
        data: DataStore,
        provider: ShippingRateProvider,
        settings: EngineSettings,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._data = data
        self._provider = provider
        self._settings = settings
        self._clock = clock

    def parcels_for_cart(self, cart: Cart) -> List[Parcel]:
        """One parcel per physical line; listings without shipping data get the defaults."""

        parcels: List[Parcel] = []
        for item in cart.items:
            if item.is_digital:
                continue
            listing = self._data.listings.get_listing(item.listing_id)
            weight = self._settings.default_parcel_weight
            dimensions = self._settings.default_parcel_dimensions
            if listing is not None:
                weight = listing.weight or weight
                dimensions = listing.dimensions or dimensions
            parcels.append(Parcel(weight=weight, dimensions=dimensions, quantity=item.quantity))
        return parcels

    def get_rates(
        self,
        origin: Address,
        destination: Address,
        parcels: Sequence[Parcel],
        *,
        digital_only: bool = False,
    ) -> List[RateQuote]:
        if digital_only:
            return [digital_rate(self._settings.currency)]
        if not parcels:
            raise ValidationError("At least one parcel is required to quote shipping")
        if not destination.postal_code or not destination.postal_code.strip():
            raise ValidationError("Destination postal code is required")

        now = self._clock()
        key = rate_cache_key(origin, destination, parcels)
        cached = self._data.rate_cache.get_valid(key, now)
        if cached:
            logger.info("Shipping rate cache hit for %s", key)
            return sort_quotes(entry.quote for entry in cached)

        logger.info("Shipping rate cache miss for %s", key)
        quotes = sort_quotes(self._quote_with_retry(origin, destination, parcels))
        expires_at = now + self._settings.rate_cache_ttl
        weight = total_weight(parcels)
        dimensions = aggregate_dimensions(parcels)
        self._data.rate_cache.replace(
            key,
            [
                RateCacheEntry(
                    cache_key=key,
                    origin_postal_code=normalize_postal_code(origin.postal_code),
                    destination_postal_code=normalize_postal_code(destination.postal_code),
                    weight=weight,
                    dimensions=dimensions,
                    quote=quote,
                    expires_at=expires_at,
                )
                for quote in quotes
            ],
        )
        return quotes

    def _quote_with_retry(
        self, origin: Address, destination: Address, parcels: Sequence[Parcel]
    ) -> List[RateQuote]:
        """Rate lookups are idempotent reads: one retry, then the error surfaces."""

        @retry(
            stop=stop_after_attempt(2),
            wait=wait_fixed(self._settings.provider_retry_wait_seconds),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        def _quote() -> List[RateQuote]:
            try:
                return list(self._provider.quote(origin, destination, parcels))
            except ExternalServiceError as exc:
                logger.warning("Shipping rate provider failed: %s", exc.message)
                raise

        try:
            return _quote()
        except ExternalServiceError as exc:
            logger.error("Shipping rate lookup failed after retry: %s", exc.message)
            raise

    def quote_cart(self, cart: Cart, destination: Address) -> List[CartShippingOption]:
        """Quote the cart's parcels from its store's origin and turn the quotes into cart options."""

        cart.require_active()
        if cart.is_empty:
            raise ValidationError("Your cart is empty")

        if cart.is_digital_only:
            quotes = self.get_rates(destination, destination, [], digital_only=True)
        else:
            store = self._data.listings.get_store(cart.items[0].store_id)
            if store is None:
                raise NotFoundError("Store", cart.items[0].store_id)
            quotes = self.get_rates(store.origin, destination, self.parcels_for_cart(cart))

        if not quotes:
            raise ExternalServiceError(SHIPPING_SERVICE, "No shipping rates available for this address")
        return [_option_from_quote(quote, uuid4()) for quote in quotes]


def _option_from_quote(quote: RateQuote, option_id: UUID) -> CartShippingOption:
    return CartShippingOption(
        option_id=option_id,
        carrier=quote.carrier,
        service=quote.service,
        amount=quote.amount,
        transit_days_min=quote.transit_days_min,
        transit_days_max=quote.transit_days_max,
    )
