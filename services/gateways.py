"""
External collaborators: payment gateway and shipping-rate provider.

The engine only depends on the two protocols below. The production
implementations call Supabase Edge Functions, which wrap the actual payment
processor and carrier-rate APIs:

- create-payment-intent: {amount, currency, order_id, customer} -> {intent_id, client_secret}
- create-refund:         {intent_id, amount} -> {refund_id}
- get-shipping-rates:    {origin, destination, parcels} -> {rates: [...]}

Failures are raised as ExternalServiceError. Retries are the caller's decision:
rate quotes are retried once, money-moving calls never.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Protocol, Sequence
from uuid import UUID

from supabase import Client

from domain.errors import ExternalServiceError
from domain.listing import Address
from domain.money import to_money
from domain.shipping import Parcel, RateQuote

logger = logging.getLogger(__name__)

PAYMENT_SERVICE = "payment_gateway"
SHIPPING_SERVICE = "shipping_rates"


@dataclass(frozen=True, slots=True)
class PaymentIntent:
    intent_id: str
    client_secret: str
    amount: Decimal
    currency: str


class PaymentGateway(Protocol):
    def create_payment_intent(
        self, *, amount: Decimal, currency: str, order_id: UUID, customer_key: str
    ) -> PaymentIntent: ...

    def refund(self, *, intent_id: str, amount: Decimal) -> str:
        """Refund `amount` against a captured intent; returns the gateway refund id."""
        ...


class ShippingRateProvider(Protocol):
    def quote(self, origin: Address, destination: Address, parcels: Sequence[Parcel]) -> List[RateQuote]: ...


def _address_payload(address: Address) -> Dict[str, Any]:
    return {
        "name": address.name,
        "street1": address.street,
        "city": address.city,
        "state": address.state,
        "zip": address.postal_code,
        "country": address.country,
    }


def _parcel_payload(parcel: Parcel) -> Dict[str, Any]:
    return {
        "length": str(parcel.dimensions.length),
        "width": str(parcel.dimensions.width),
        "height": str(parcel.dimensions.height),
        "distance_unit": parcel.dimensions.unit,
        "weight": str(parcel.weight),
        "mass_unit": "lb",
        "quantity": parcel.quantity,
    }


class _EdgeFunctionClient:
    service_name: str = "edge_function"

    def __init__(self, client: Client) -> None:
        self._client = client

    def _invoke(self, function: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = self._client.functions.invoke(function, invoke_options={"body": body, "responseType": "json"})
        except Exception as exc:
            logger.error("Edge function %s failed: %s", function, exc)
            raise ExternalServiceError(self.service_name, f"{function} failed: {exc}", retryable=True) from exc

        if not isinstance(result, dict):
            raise ExternalServiceError(self.service_name, f"{function} returned an unexpected response")
        if result.get("error"):
            raise ExternalServiceError(self.service_name, str(result["error"]))
        return result


class EdgeFunctionPaymentGateway(_EdgeFunctionClient):
    service_name = PAYMENT_SERVICE

    def create_payment_intent(
        self, *, amount: Decimal, currency: str, order_id: UUID, customer_key: str
    ) -> PaymentIntent:
        result = self._invoke(
            "create-payment-intent",
            {
                "amount": str(amount),
                "currency": currency.lower(),
                "order_id": str(order_id),
                "customer": customer_key,
            },
        )
        try:
            return PaymentIntent(
                intent_id=str(result["intent_id"]),
                client_secret=str(result["client_secret"]),
                amount=amount,
                currency=currency,
            )
        except KeyError as exc:
            raise ExternalServiceError(self.service_name, f"payment intent response is missing {exc}") from exc

    def refund(self, *, intent_id: str, amount: Decimal) -> str:
        result = self._invoke("create-refund", {"intent_id": intent_id, "amount": str(amount)})
        refund_id = result.get("refund_id")
        if not refund_id:
            raise ExternalServiceError(self.service_name, "refund response is missing refund_id")
        return str(refund_id)


class EdgeFunctionRateProvider(_EdgeFunctionClient):
    service_name = SHIPPING_SERVICE

    def quote(self, origin: Address, destination: Address, parcels: Sequence[Parcel]) -> List[RateQuote]:
        result = self._invoke(
            "get-shipping-rates",
            {
                "address_from": _address_payload(origin),
                "address_to": _address_payload(destination),
                "parcels": [_parcel_payload(p) for p in parcels],
            },
        )
        quotes: List[RateQuote] = []
        for rate in result.get("rates") or []:
            try:
                quotes.append(
                    RateQuote(
                        carrier=str(rate["provider"]),
                        service=str(rate["servicelevel"]),
                        amount=to_money(rate["amount"]),
                        transit_days=rate.get("estimated_days"),
                        currency=str(rate.get("currency") or "USD"),
                    )
                )
            except (KeyError, ValueError) as exc:
                raise ExternalServiceError(self.service_name, f"malformed rate in response: {exc}") from exc
        return quotes
