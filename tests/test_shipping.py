"""
Tests for `domain/shipping.py` and `services/shipping_rates.py`.

Covers contract rules:
- Cache key: normalized postal codes, total weight, aggregate dimensions.
- A valid cached entry is served without calling the provider.
- Entries are valid for the cache TTL and refetched afterwards.
- Provider failures are retried once; a second failure surfaces as an
  external-service error.
- Quotes are returned sorted by amount.
- Digital-only carts skip the provider and get one free option.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import DESTINATION
from domain.errors import ErrorKind, ExternalServiceError, ValidationError
from domain.listing import Address, Dimensions
from domain.shipping import Parcel, aggregate_dimensions, normalize_postal_code, rate_cache_key, total_weight
from services.gateways import SHIPPING_SERVICE

ORIGIN = Address(postal_code="94107")
BOX = Dimensions(Decimal("12"), Decimal("8"), Decimal("4"))


def _outage(retryable: bool = True) -> ExternalServiceError:
    return ExternalServiceError(SHIPPING_SERVICE, "upstream timed out", retryable=retryable)


def test_postal_codes_are_normalized() -> None:
    assert normalize_postal_code(" sw1a 1aa ") == "SW1A1AA"


def test_cache_key_uses_weight_and_aggregate_box() -> None:
    """Verify the key stacks parcel heights and sums weights."""

    parcels = [Parcel(Decimal("2"), BOX, quantity=2), Parcel(Decimal("1.5"), Dimensions(Decimal("6"), Decimal("9"), Decimal("1")))]

    assert total_weight(parcels) == Decimal("5.50")
    assert aggregate_dimensions(parcels) == Dimensions(Decimal("12"), Decimal("9"), Decimal("9"), "in")
    assert rate_cache_key(ORIGIN, Address(postal_code="100 01"), parcels) == "94107|10001|5.50|12.00x9.00x9.00in"


def test_second_lookup_is_served_from_cache(engine, provider) -> None:
    """Verify a hit skips the provider, including for an equivalent postal code."""

    parcels = [Parcel(Decimal("2"), BOX)]

    first = engine.rates.get_rates(ORIGIN, DESTINATION, parcels)
    second = engine.rates.get_rates(ORIGIN, Address(postal_code=" 1000 1"), parcels)

    assert provider.calls == 1
    assert first == second
    assert [q.amount for q in first] == [Decimal("8.50"), Decimal("12.00")]


def test_different_weight_misses_the_cache(engine, provider) -> None:
    engine.rates.get_rates(ORIGIN, DESTINATION, [Parcel(Decimal("2"), BOX)])
    engine.rates.get_rates(ORIGIN, DESTINATION, [Parcel(Decimal("3"), BOX)])

    assert provider.calls == 2


def test_cached_rates_expire_after_ttl(engine, provider, clock, settings) -> None:
    """Verify entries are valid strictly before expires_at."""

    parcels = [Parcel(Decimal("2"), BOX)]
    engine.rates.get_rates(ORIGIN, DESTINATION, parcels)

    clock.advance(seconds=settings.rate_cache_ttl.total_seconds() - 1)
    engine.rates.get_rates(ORIGIN, DESTINATION, parcels)
    assert provider.calls == 1

    clock.advance(seconds=1)
    engine.rates.get_rates(ORIGIN, DESTINATION, parcels)
    assert provider.calls == 2


def test_provider_failure_is_retried_once(engine, provider) -> None:
    provider.failures.append(_outage())

    quotes = engine.rates.get_rates(ORIGIN, DESTINATION, [Parcel(Decimal("2"), BOX)])

    assert provider.calls == 2
    assert len(quotes) == 2


def test_second_failure_surfaces_and_caches_nothing(engine, data, provider, clock) -> None:
    """Verify two failures raise and leave the cache empty."""

    parcels = [Parcel(Decimal("2"), BOX)]
    provider.failures.extend([_outage(), _outage()])

    with pytest.raises(ExternalServiceError) as exc_info:
        engine.rates.get_rates(ORIGIN, DESTINATION, parcels)

    assert provider.calls == 2
    assert exc_info.value.service == SHIPPING_SERVICE
    assert data.rate_cache.get_valid(rate_cache_key(ORIGIN, DESTINATION, parcels), clock.now) == []


def test_non_retryable_failure_is_not_retried(engine, provider) -> None:
    provider.failures.append(_outage(retryable=False))

    with pytest.raises(ExternalServiceError):
        engine.rates.get_rates(ORIGIN, DESTINATION, [Parcel(Decimal("2"), BOX)])

    assert provider.calls == 1


def test_missing_destination_postal_code_is_rejected(engine, provider) -> None:
    with pytest.raises(ValidationError):
        engine.rates.get_rates(ORIGIN, Address(postal_code="  "), [Parcel(Decimal("2"), BOX)])

    assert provider.calls == 0


def test_cart_quote_becomes_selectable_options(engine, catalog, customer) -> None:
    """Verify quoted options carry transit ranges and are sorted by price."""

    cart = engine.get_or_create_cart(customer).data
    engine.add_item(customer, cart.cart_id, catalog.widget.listing_id, 2)

    cart = engine.get_shipping_rates(customer, cart.cart_id, DESTINATION).data

    options = cart.shipping_options
    assert [(o.carrier, o.amount) for o in options] == [("USPS", Decimal("8.50")), ("UPS", Decimal("12.00"))]
    assert (options[0].transit_days_min, options[0].transit_days_max) == (2, 4)
    assert cart.selected_shipping is None

    cart = engine.select_shipping_option(customer, cart.cart_id, options[1].option_id).data
    assert cart.selected_shipping.carrier == "UPS"
    assert cart.total_shipping == Decimal("12.00")
    assert cart.total_price == Decimal("40.00") + Decimal("12.00") + Decimal("4.00")


def test_digital_only_cart_skips_the_provider(engine, catalog, customer, provider) -> None:
    cart = engine.get_or_create_cart(customer).data
    engine.add_item(customer, cart.cart_id, catalog.ebook.listing_id, 1)

    cart = engine.get_shipping_rates(customer, cart.cart_id, DESTINATION).data

    assert provider.calls == 0
    assert len(cart.shipping_options) == 1
    assert cart.shipping_options[0].amount == Decimal("0.00")
    assert cart.shipping_options[0].service == "digital"


def test_quote_failure_is_reported_through_the_engine(engine, catalog, customer, provider) -> None:
    cart = engine.get_or_create_cart(customer).data
    engine.add_item(customer, cart.cart_id, catalog.widget.listing_id, 1)
    provider.failures.extend([_outage(), _outage()])

    result = engine.get_shipping_rates(customer, cart.cart_id, DESTINATION)

    assert result.ok is False
    assert result.error.kind == ErrorKind.EXTERNAL_SERVICE.value
    assert result.error.details == {"service": SHIPPING_SERVICE, "retryable": True}


def test_empty_cart_cannot_be_quoted(engine, customer) -> None:
    cart = engine.get_or_create_cart(customer).data

    result = engine.get_shipping_rates(customer, cart.cart_id, DESTINATION)

    assert result.error.kind == ErrorKind.VALIDATION.value
    assert result.error.message == "Your cart is empty"
