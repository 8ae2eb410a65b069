"""
Engine configuration.

Values come from environment variables, optionally loaded from the `.env` file
at the project root. Every setting has a default so the in-memory engine runs
without any configuration.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from domain.listing import Dimensions

env_path = Path(__file__).parent.parent / ".env"


@dataclass(frozen=True, slots=True)
class EngineSettings:
    currency: str = "USD"
    tax_rate: Decimal = Decimal("0.10")
    guest_cart_ttl: timedelta = timedelta(hours=168)
    rate_cache_ttl: timedelta = timedelta(hours=24)
    checkout_session_ttl: timedelta = timedelta(minutes=30)
    external_timeout_seconds: float = 10.0
    provider_retry_wait_seconds: float = 0.5
    default_parcel_weight: Decimal = Decimal("1")
    default_parcel_dimensions: Dimensions = Dimensions(Decimal("10"), Decimal("10"), Decimal("2"), "in")
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """
        Build settings from the environment.

        Recognised variables (all optional):
        - FULFILLMENT_CURRENCY
        - FULFILLMENT_TAX_RATE (fraction, e.g. 0.10)
        - FULFILLMENT_GUEST_CART_TTL_HOURS
        - FULFILLMENT_RATE_CACHE_TTL_HOURS
        - FULFILLMENT_CHECKOUT_TTL_MINUTES
        - FULFILLMENT_EXTERNAL_TIMEOUT_SECONDS
        - FULFILLMENT_LOG_LEVEL
        """

        if environ is None:
            load_dotenv(dotenv_path=env_path)
            environ = os.environ

        defaults = cls()
        return cls(
            currency=environ.get("FULFILLMENT_CURRENCY", defaults.currency).upper(),
            tax_rate=_decimal(environ, "FULFILLMENT_TAX_RATE", defaults.tax_rate),
            guest_cart_ttl=timedelta(
                hours=_number(environ, "FULFILLMENT_GUEST_CART_TTL_HOURS", defaults.guest_cart_ttl.total_seconds() / 3600)
            ),
            rate_cache_ttl=timedelta(
                hours=_number(environ, "FULFILLMENT_RATE_CACHE_TTL_HOURS", defaults.rate_cache_ttl.total_seconds() / 3600)
            ),
            checkout_session_ttl=timedelta(
                minutes=_number(
                    environ, "FULFILLMENT_CHECKOUT_TTL_MINUTES", defaults.checkout_session_ttl.total_seconds() / 60
                )
            ),
            external_timeout_seconds=_number(
                environ, "FULFILLMENT_EXTERNAL_TIMEOUT_SECONDS", defaults.external_timeout_seconds
            ),
            log_level=environ.get("FULFILLMENT_LOG_LEVEL", defaults.log_level).upper(),
        )


def _decimal(environ: Mapping[str, str], name: str, default: Decimal) -> Decimal:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"{name} must be a decimal number, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must be >= 0")
    return value


def _number(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return value
