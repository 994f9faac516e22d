"""pilot_shared.notifications — PDF email dispatcher.

After an actions or consents write that sets its trigger field, check whether
every workflow stage for the kit has converged and, if so, publish one
``send_pdf_email`` message to the notification topic. The dispatcher only
reads; the mailer downstream marks ``actions.pdf_email_sent`` through the
update endpoint once the email goes out.

Nothing here raises to the caller. The triggering write has already
committed, so read and publish failures are logged and reported as an
outcome string.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from pilot_shared import config
from pilot_shared.aws_clients import _get_sns
from pilot_shared.entity_store import EntityStore
from pilot_shared.serialization import _emit_structured_observability, _json_default

logger = logging.getLogger(__name__)

__all__ = [
    "MESSAGE_TYPE_SEND_PDF_EMAIL",
    "PdfEmailDispatcher",
    "is_triggered",
]

MESSAGE_TYPE_SEND_PDF_EMAIL = "send_pdf_email"

OUTCOME_SENT = "sent"
OUTCOME_FAILED = "failed"


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "t", "1", "yes", "y", "on"}
    if isinstance(value, (int, float)):
        return value == 1
    return False


def is_triggered(table: str, fields: Dict[str, Any]) -> bool:
    """True when an update to table sets its trigger field to a truthy value."""
    if table not in config.ENTITY_TABLES:
        return False
    trigger = config.table_policy(table).trigger_field
    return bool(trigger) and _truthy(fields.get(trigger))


def _first(rows: Iterable[Dict[str, Any]], predicate: Callable[[Dict[str, Any]], bool]) -> Optional[Dict[str, Any]]:
    for row in rows:
        if predicate(row):
            return row
    return None


class PdfEmailDispatcher:
    def __init__(
        self,
        store: EntityStore,
        sns_factory: Callable[[], Any] = _get_sns,
        topic_arn: Optional[str] = None,
    ) -> None:
        self._store = store
        self._sns_factory = sns_factory
        self._topic_arn = topic_arn

    @property
    def topic_arn(self) -> str:
        return self._topic_arn if self._topic_arn is not None else config.NOTIFICATION_TOPIC_ARN

    def evaluate(self, kit_id: str) -> Tuple[Optional[Dict[str, Any]], str]:
        """Return (message, reason). message is None unless the kit is ready."""
        users = self._store.list_by_kit_id("users", kit_id)
        if not users:
            return None, "no_user"
        consent = _first(
            self._store.list_by_kit_id("consents", kit_id),
            lambda row: _truthy(row.get("toc_agreed")),
        )
        if consent is None:
            return None, "no_consent"
        action = _first(
            self._store.list_by_kit_id("actions", kit_id),
            lambda row: _truthy(row.get("appointment_made")),
        )
        if action is None:
            return None, "no_appointment"
        if _truthy(action.get("pdf_email_sent")):
            return None, "already_sent"

        user = users[0]
        message: Dict[str, Any] = {
            "message_type": MESSAGE_TYPE_SEND_PDF_EMAIL,
            "kit_id": kit_id,
            "firstName": user.get("first_name"),
            "email": user.get("email"),
        }
        if action.get("pdf_link"):
            message["link"] = action["pdf_link"]
        return message, "ready"

    def maybe_dispatch(self, kit_id: str) -> str:
        """Publish the PDF email message if the kit is ready. Never raises."""
        try:
            message, reason = self.evaluate(kit_id)
        except Exception as exc:
            logger.error("dispatch readiness check failed kit_id=%s: %s", kit_id, exc, exc_info=True)
            return OUTCOME_FAILED

        if message is None:
            logger.info("[INFO] pdf email not ready kit_id=%s reason=%s", kit_id, reason)
            return f"skipped:{reason}"

        topic_arn = self.topic_arn
        if not topic_arn:
            logger.warning("NOTIFICATION_TOPIC_ARN not set; skipping pdf email for kit_id=%s", kit_id)
            return "skipped:no_topic"

        try:
            resp = self._sns_factory().publish(
                TopicArn=topic_arn,
                Message=json.dumps(message, default=_json_default),
                MessageAttributes={
                    "message_type": {
                        "DataType": "String",
                        "StringValue": MESSAGE_TYPE_SEND_PDF_EMAIL,
                    }
                },
            )
        except Exception as exc:
            logger.error("pdf email publish failed kit_id=%s: %s", kit_id, exc, exc_info=True)
            _emit_structured_observability(
                component="notifications",
                event="publish_failed",
                kit_id=kit_id,
                error_code=type(exc).__name__,
            )
            return OUTCOME_FAILED

        _emit_structured_observability(
            component="notifications",
            event="pdf_email_published",
            kit_id=kit_id,
            extra={"message_id": (resp or {}).get("MessageId", "")},
        )
        return OUTCOME_SENT
