"""state_api/lambda_function.py

Lambda API handler for the pilot key-value state table.

Routes (via API Gateway proxy):
    GET  /state?key=<key>   — read one entry
    POST /state             — upsert {key, value?}
    OPTIONS /state          — CORS preflight

Environment variables:
    DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD   connection
    DB_SECRET_ID           optional Secrets Manager secret with credentials
    STATE_TABLE            default: state_machine_state
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict

from pilot_shared.errors import ApiError
from pilot_shared.http_utils import _api_error, _error, _json_body, _path_method, _query_params, _response
from pilot_shared.serialization import _emit_structured_observability
from pilot_shared.state_store import StateStore

logger = logging.getLogger(__name__)

_STATE_PATTERN = re.compile(r"(?:^|/)state$")

# ---------------------------------------------------------------------------
# Store singleton
# ---------------------------------------------------------------------------

_state_store = None


def _get_state_store() -> StateStore:
    global _state_store
    if _state_store is None:
        _state_store = StateStore()
    return _state_store


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _handle_get_state(event: Dict[str, Any], store: StateStore) -> Dict[str, Any]:
    """GET /state?key=..."""
    key = _query_params(event).get("key")
    if not key or not isinstance(key, str):
        return _error(400, 'Query parameter "key" is required')
    return _response(200, store.read(key))


def _handle_put_state(event: Dict[str, Any], store: StateStore) -> Dict[str, Any]:
    """POST /state {key, value?}"""
    body = _json_body(event)
    return _response(200, store.write(body.get("key"), body.get("value")))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    method, path = _path_method(event)
    logger.info("[INFO] route method=%s path=%s", method, path)

    if method == "OPTIONS":
        return _response(204, "")

    if not _STATE_PATTERN.search(path):
        return _error(404, f"Route not found: {method} {path}")

    started = time.monotonic()
    try:
        if method == "GET":
            return _handle_get_state(event, _get_state_store())
        if method == "POST":
            return _handle_put_state(event, _get_state_store())
        return _error(405, f"Method {method} not allowed")
    except ApiError as exc:
        if exc.status_code >= 500:
            logger.error("state_api %s %s failed: %s", method, path, exc.message, exc_info=True)
        _emit_structured_observability(
            component="state_api",
            event="request_failed",
            latency_ms=int((time.monotonic() - started) * 1000),
            error_code=exc.code,
        )
        return _api_error(exc)
    except Exception as exc:
        logger.error("Unexpected error: %s", exc, exc_info=True)
        return _error(500, "Internal service error")
