"""entity_api/lambda_function.py

Lambda API handler for kit_id-keyed workflow tables
(actions, users, reports, kits, consents).

Routes (via API Gateway proxy):
    POST /{table}          — list rows for {kit_id}
    POST /{table}/update   — update allowlisted columns for {kit_id, ...fields},
                             inserting the row when the table allows it
    OPTIONS /*             — CORS preflight

An update to actions.appointment_made or consents.toc_agreed (truthy) runs the
PDF email dispatcher after the write commits. Dispatcher failures never change
the response status.

Environment variables:
    DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD   connection
    DB_SECRET_ID               optional Secrets Manager secret with credentials
    INSERT_ON_MISSING_TABLES   default: actions,consents,users
    NOTIFICATION_TOPIC_ARN     SNS topic for send_pdf_email messages
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict

from pilot_shared import config
from pilot_shared.entity_store import EntityStore, prepare_fields, require_kit_id
from pilot_shared.errors import ApiError
from pilot_shared.http_utils import _api_error, _error, _json_body, _path_method, _response
from pilot_shared.notifications import PdfEmailDispatcher, is_triggered
from pilot_shared.serialization import _emit_structured_observability

logger = logging.getLogger(__name__)

_ROUTE_PATTERN = re.compile(
    r"(?:^|/)(?P<table>" + "|".join(config.ENTITY_TABLES) + r")(?P<update>/update)?$"
)

# ---------------------------------------------------------------------------
# Store / dispatcher singletons
# ---------------------------------------------------------------------------

_entity_store = None
_dispatcher = None


def _get_entity_store() -> EntityStore:
    global _entity_store
    if _entity_store is None:
        _entity_store = EntityStore()
    return _entity_store


def _get_dispatcher() -> PdfEmailDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = PdfEmailDispatcher(_get_entity_store())
    return _dispatcher


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _handle_list(table: str, event: Dict[str, Any], store: EntityStore) -> Dict[str, Any]:
    """POST /{table} {kit_id}"""
    body = _json_body(event)
    kit_id = require_kit_id(body.get("kit_id"))
    rows = store.list_by_kit_id(table, kit_id)
    return _response(200, {"kit_id": kit_id, table: rows})


def _handle_update(
    table: str,
    event: Dict[str, Any],
    store: EntityStore,
    dispatcher: PdfEmailDispatcher,
) -> Dict[str, Any]:
    """POST /{table}/update {kit_id, ...fields}"""
    body = _json_body(event)
    kit_id = require_kit_id(body.get("kit_id"))
    fields, dropped = prepare_fields(body)

    result = store.update_by_kit_id(table, kit_id, fields)
    if is_triggered(table, fields):
        result["notification"] = dispatcher.maybe_dispatch(kit_id)

    _emit_structured_observability(
        component="entity_api",
        event="entity_updated",
        kit_id=kit_id,
        table=table,
        extra={
            "updated": result["updated"],
            "created": result["created"],
            "dropped_fields": dropped,
            "notification": result.get("notification", ""),
        },
    )
    return _response(200, result)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    method, path = _path_method(event)
    logger.info("[INFO] route method=%s path=%s", method, path)

    if method == "OPTIONS":
        return _response(204, "")

    match = _ROUTE_PATTERN.search(path)
    if not match:
        return _error(404, f"Route not found: {method} {path}")
    if method != "POST":
        return _error(405, f"Method {method} not allowed")

    table = match.group("table")
    started = time.monotonic()
    try:
        if match.group("update"):
            return _handle_update(table, event, _get_entity_store(), _get_dispatcher())
        return _handle_list(table, event, _get_entity_store())
    except ApiError as exc:
        if exc.status_code >= 500:
            logger.error("entity_api %s %s failed: %s", method, path, exc.message, exc_info=True)
        _emit_structured_observability(
            component="entity_api",
            event="request_failed",
            table=table,
            latency_ms=int((time.monotonic() - started) * 1000),
            error_code=exc.code,
        )
        return _api_error(exc)
    except Exception as exc:
        logger.error("Unexpected error: %s", exc, exc_info=True)
        return _error(500, "Internal service error")
