"""actions_webhook/lambda_function.py

Booking webhook for the pilot workflow. Marks actions.appointment_made for
the kit(s) behind a booking and runs the PDF email dispatcher for each.

Routes (via API Gateway proxy):
    POST /webhooks/actions

Accepted payloads:
    {"kit_id": "...", ...fields}
        Direct form. appointment_made defaults to true; other allowlisted
        fields are written alongside it.
    {"event": "invitee.created", "payload": {"email": ..., "scheduled_event":
     {"event_guests": [{"email": ...}]}}}
        Calendar-tool form. The invitee and every guest email are resolved
        to kit_ids through users.email. Other event types are acknowledged
        and ignored.

This endpoint ALWAYS answers HTTP 200. The calendar tool retries any non-200
response indefinitely, so every failure (bad JSON, bad signature, unknown
email, database error) is reported as {"ok": false, "error": ...}.

Environment variables:
    WEBHOOK_SIGNING_KEY     enables Calendly-Webhook-Signature verification
    NOTIFICATION_TOPIC_ARN  SNS topic for send_pdf_email messages
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from pilot_shared import config
from pilot_shared.entity_store import EntityStore, prepare_fields, require_kit_id
from pilot_shared.errors import ApiError, InvalidArgument
from pilot_shared.http_utils import _json_body, _path_method, _response
from pilot_shared.notifications import PdfEmailDispatcher, is_triggered
from pilot_shared.serialization import _emit_structured_observability

logger = logging.getLogger(__name__)

ACTIONS_TABLE = "actions"
BOOKING_EVENT = "invitee.created"
SIGNATURE_HEADER = "calendly-webhook-signature"
SIGNATURE_TOLERANCE_SECONDS = 180

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
# Signature verification
# ---------------------------------------------------------------------------


def _raw_body(event: Dict[str, Any]) -> str:
    raw = event.get("body") or ""
    if event.get("isBase64Encoded"):
        raw = base64.b64decode(raw).decode("utf-8")
    return raw


def _header(event: Dict[str, Any], name: str) -> str:
    for key, value in (event.get("headers") or {}).items():
        if key.lower() == name:
            return value or ""
    return ""


def _verify_signature(event: Dict[str, Any], signing_key: str, now: Optional[float] = None) -> None:
    """Check a ``t=<unix>,v1=<hex hmac-sha256 of "t.body">`` signature header."""
    header = _header(event, SIGNATURE_HEADER)
    parts: Dict[str, str] = {}
    for item in header.split(","):
        name, sep, value = item.partition("=")
        if sep:
            parts[name.strip()] = value
    timestamp = parts.get("t", "").strip()
    signature = parts.get("v1", "").strip()
    if not timestamp or not signature:
        raise InvalidArgument("Missing webhook signature")

    try:
        signed_at = int(timestamp)
    except ValueError as exc:
        raise InvalidArgument("Malformed webhook signature") from exc
    if abs((now if now is not None else time.time()) - signed_at) > SIGNATURE_TOLERANCE_SECONDS:
        raise InvalidArgument("Webhook signature expired")

    expected = hmac.new(
        signing_key.encode("utf-8"),
        f"{timestamp}.{_raw_body(event)}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise InvalidArgument("Invalid webhook signature")


# ---------------------------------------------------------------------------
# Payload interpretation
# ---------------------------------------------------------------------------


def _booking_emails(payload: Dict[str, Any]) -> List[str]:
    """Invitee email first, then guest emails, deduplicated case-insensitively."""
    candidates: List[Any] = [payload.get("email"), (payload.get("invitee") or {}).get("email")]
    scheduled = payload.get("scheduled_event") or payload.get("event") or {}
    if isinstance(scheduled, dict):
        for guest in scheduled.get("event_guests") or []:
            if isinstance(guest, dict):
                candidates.append(guest.get("email"))

    emails: List[str] = []
    seen = set()
    for email in candidates:
        if not isinstance(email, str) or not email.strip():
            continue
        norm = email.strip().lower()
        if norm in seen:
            continue
        seen.add(norm)
        emails.append(email.strip())
    return emails


def _resolve_kits(emails: List[str], store: EntityStore) -> Tuple[List[str], List[str]]:
    kit_ids: List[str] = []
    unresolved: List[str] = []
    for email in emails:
        found = store.find_kit_ids_by_email(email)
        if not found:
            unresolved.append(email)
        for kit_id in found:
            if kit_id not in kit_ids:
                kit_ids.append(kit_id)
    return kit_ids, unresolved


def _handle_booking(
    event: Dict[str, Any],
    store: EntityStore,
    dispatcher: PdfEmailDispatcher,
) -> Dict[str, Any]:
    if config.WEBHOOK_SIGNING_KEY:
        _verify_signature(event, config.WEBHOOK_SIGNING_KEY)

    body = _json_body(event)
    unresolved: List[str] = []

    if "kit_id" in body:
        kit_ids = [require_kit_id(body["kit_id"])]
        fields, _dropped = prepare_fields({"appointment_made": True, **body})
    else:
        event_type = body.get("event")
        if event_type != BOOKING_EVENT:
            logger.info("[INFO] ignoring webhook event=%s", event_type)
            return {"ok": True, "ignored": True, "event": event_type}
        payload = body.get("payload")
        if not isinstance(payload, dict):
            raise InvalidArgument("Webhook payload is missing")
        emails = _booking_emails(payload)
        if not emails:
            raise InvalidArgument("No invitee email in webhook payload")
        kit_ids, unresolved = _resolve_kits(emails, store)
        if not kit_ids:
            return {"ok": False, "error": "No kit found for booking email", "unresolved_emails": unresolved}
        fields = {"appointment_made": True}

    # Each kit commits on its own; one failing kit must not hide the others.
    notifications: Dict[str, str] = {}
    failed: Dict[str, str] = {}
    for kit_id in kit_ids:
        try:
            store.update_by_kit_id(ACTIONS_TABLE, kit_id, fields)
        except ApiError as exc:
            logger.error("actions update failed kit_id=%s code=%s: %s", kit_id, exc.code, exc.message)
            failed[kit_id] = exc.code
            notifications[kit_id] = f"failed:{exc.code}"
            continue
        if is_triggered(ACTIONS_TABLE, fields):
            notifications[kit_id] = dispatcher.maybe_dispatch(kit_id)

    _emit_structured_observability(
        component="actions_webhook",
        event="booking_processed",
        table=ACTIONS_TABLE,
        error_code=",".join(sorted(set(failed.values()))),
        extra={"kit_ids": kit_ids, "unresolved_emails": unresolved, "notifications": notifications},
    )
    result: Dict[str, Any] = {
        "ok": not failed,
        "kit_ids": kit_ids,
        "unresolved_emails": unresolved,
        "notifications": notifications,
    }
    if failed:
        result["error"] = "Update failed for some kits"
        result["failed_kit_ids"] = list(failed)
    return result


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point. Always returns 200."""
    try:
        method, path = _path_method(event)
        logger.info("[INFO] route method=%s path=%s", method, path)
        if method == "OPTIONS":
            return _response(200, {"ok": True})
        if method != "POST":
            return _response(200, {"ok": False, "error": f"Method {method} not allowed"})
        return _response(200, _handle_booking(event, _get_entity_store(), _get_dispatcher()))
    except ApiError as exc:
        logger.warning("actions webhook rejected: %s", exc.message)
        return _response(200, {"ok": False, "error": exc.message, "code": exc.code})
    except Exception as exc:
        logger.error("actions webhook failed: %s", exc, exc_info=True)
        return _response(200, {"ok": False, "error": "Internal service error"})
