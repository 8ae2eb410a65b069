"""
Calling the atomic PL/pgSQL functions in `sql/functions.sql`.

Every function returns a JSON object of the form
`{"success": true, ...}` or `{"success": false, "error": CODE, "message": ..., ...}`.
Failures are translated into the typed errors from `domain.errors`.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

from postgrest.exceptions import APIError
from supabase import Client

from domain.errors import InvariantViolationError, error_from_code

logger = logging.getLogger(__name__)

_INVARIANT_PREFIX = "INVARIANT:"


def call_atomic(client: Client, function: str, params: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Execute `function` via PostgREST RPC and return its JSON payload on success.

    Raises the typed error matching the function's error code, or RuntimeError
    when the call itself fails.
    """

    try:
        response = client.rpc(function, dict(params)).execute()
    except APIError as exc:
        # supabase-py raises APIError for some JSON results, including successful ones
        payload = _api_error_payload(exc)
        if payload.get("success") is True:
            return payload
        if "error" in payload and "success" in payload:
            raise error_from_code(payload.get("error"), payload.get("message"), payload) from exc
        message = str(payload.get("message") or "")
        if message.startswith(_INVARIANT_PREFIX):
            # Raised by the ledger functions when a hold or reservation disagrees with the order
            raise InvariantViolationError(message[len(_INVARIANT_PREFIX):].strip()) from exc
        raise RuntimeError(f"{function} failed: {exc}") from exc

    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"{function} failed: {error}")

    result = response.data
    if not isinstance(result, dict):
        raise RuntimeError(f"{function} returned an unexpected payload: {result!r}")
    if not result.get("success"):
        logger.info("%s refused: %s %s", function, result.get("error"), result.get("message"))
        raise error_from_code(result.get("error"), result.get("message"), result)
    return result


def _api_error_payload(exc: APIError) -> Dict[str, Any]:
    json_method = getattr(exc, "json", None)
    if not callable(json_method):
        return {}
    try:
        data = json_method()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
