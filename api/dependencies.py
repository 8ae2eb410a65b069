"""
Shared API dependencies.

- get_engine: the process-wide engine (overridden in tests)
- get_actor: caller identity from the X-Account-Id / X-Device-Id headers
- unwrap: turn an OperationResult into its data or an HTTPException
"""

from functools import lru_cache
from typing import Any, Optional
from uuid import UUID

from fastapi import Header, HTTPException

from domain.actor import ActorContext
from domain.errors import ErrorKind
from services.engine import FulfillmentEngine, OperationResult, build_engine

_STATUS_BY_KIND = {
    ErrorKind.VALIDATION.value: 400,
    ErrorKind.NOT_FOUND.value: 404,
    ErrorKind.INSUFFICIENT_STOCK.value: 409,
    ErrorKind.EXTERNAL_SERVICE.value: 502,
}


@lru_cache(maxsize=1)
def get_engine() -> FulfillmentEngine:
    return build_engine()


def get_actor(
    x_account_id: Optional[UUID] = Header(None, description="Authenticated account id"),
    x_device_id: Optional[str] = Header(None, description="Guest device token"),
) -> ActorContext:
    """Identity is established upstream; at least one header is required."""
    if x_account_id is None and not x_device_id:
        raise HTTPException(status_code=401, detail="X-Account-Id or X-Device-Id header is required")
    return ActorContext(account_id=x_account_id, device_id=x_device_id or None)


def unwrap(result: OperationResult) -> Any:
    if result.ok:
        return result.data
    error = result.error
    raise HTTPException(
        status_code=_STATUS_BY_KIND.get(error.kind, 400),
        detail={"kind": error.kind, "message": error.message, "details": error.details},
    )
