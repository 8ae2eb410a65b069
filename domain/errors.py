"""
Domain: Error taxonomy.

Every failure the engine reports belongs to exactly one `ErrorKind`:

- validation: malformed input, or an operation not allowed in the current state
- not_found: entity absent, or not owned by the caller (reported identically so
  the existence of other customers' carts/orders never leaks)
- insufficient_stock: recoverable; carries the quantity still available
- invariant_violation: the ledger or a computed total disagrees with its own
  history; fatal, the operation halts and nothing is "fixed" automatically
- external_service: payment gateway or shipping-rate provider failure
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    INSUFFICIENT_STOCK = "insufficient_stock"
    INVARIANT_VIOLATION = "invariant_violation"
    EXTERNAL_SERVICE = "external_service"


class FulfillmentError(Exception):
    """Base class for all typed engine errors."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def details(self) -> Dict[str, Any]:
        return {}


class ValidationError(FulfillmentError):
    """Raised when input is malformed or the requested change is not allowed."""

    kind = ErrorKind.VALIDATION


class NotFoundError(FulfillmentError):
    """Raised when an entity does not exist or is not visible to the caller."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity: str, entity_id: Any = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class InsufficientStockError(FulfillmentError):
    """Raised when a reservation cannot be satisfied."""

    kind = ErrorKind.INSUFFICIENT_STOCK

    def __init__(self, listing_id: UUID, requested: int, available: int) -> None:
        self.listing_id = listing_id
        self.requested = requested
        self.available = max(available, 0)
        if self.available == 0:
            message = "This item is out of stock"
        else:
            message = f"Only {self.available} available"
        super().__init__(message)

    def details(self) -> Dict[str, Any]:
        return {
            "listing_id": str(self.listing_id),
            "requested": self.requested,
            "available": self.available,
        }


class InvariantViolationError(FulfillmentError):
    """Raised when persisted state contradicts the ledger or its own totals."""

    kind = ErrorKind.INVARIANT_VIOLATION


class ExternalServiceError(FulfillmentError):
    """Raised when the payment gateway or rate provider fails."""

    kind = ErrorKind.EXTERNAL_SERVICE

    def __init__(self, service: str, message: str, *, retryable: bool = False) -> None:
        self.service = service
        self.retryable = retryable
        super().__init__(f"{service}: {message}")

    def details(self) -> Dict[str, Any]:
        return {"service": self.service, "retryable": self.retryable}


def error_from_code(code: Optional[str], message: Optional[str], payload: Dict[str, Any]) -> FulfillmentError:
    """
    Translate an error code returned by one of the database functions into a
    typed error. Unknown codes are treated as invariant violations: the
    database refused a change the service layer believed was valid.
    """

    text = message or code or "Unknown database error"
    if code == "INSUFFICIENT_STOCK":
        return InsufficientStockError(
            listing_id=UUID(str(payload["listing_id"])),
            requested=int(payload.get("requested", 0)),
            available=int(payload.get("available", 0)),
        )
    if code == "NOT_FOUND":
        return NotFoundError(str(payload.get("entity", "Record")), payload.get("entity_id"))
    if code == "VALIDATION":
        return ValidationError(text)
    return InvariantViolationError(text)
