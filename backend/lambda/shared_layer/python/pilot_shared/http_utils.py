"""pilot_shared.http_utils — HTTP response helpers with CORS.

Standard response envelope, error formatting and API Gateway event parsing
used by all Pilot Lambda functions. Handles both REST (v1) and HTTP API (v2)
proxy event shapes.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, Tuple

from pilot_shared import config
from pilot_shared.errors import ApiError, InvalidArgument
from pilot_shared.serialization import _json_default

logger = logging.getLogger(__name__)

__all__ = [
    "_api_error",
    "_cors_headers",
    "_error",
    "_json_body",
    "_path_method",
    "_query_params",
    "_response",
]


def _cors_headers() -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": config.CORS_ORIGIN,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
    }


def _response(status_code: int, payload: Any) -> Dict[str, Any]:
    """Build a standard API Gateway response with CORS headers."""
    return {
        "statusCode": status_code,
        "headers": {**_cors_headers(), "Content-Type": "application/json"},
        "body": json.dumps(payload, default=_json_default),
    }


def _error(status_code: int, message: str, **extra: Any) -> Dict[str, Any]:
    code = str(extra.pop("code", "") or "").strip().upper()
    if not code:
        if status_code == 400:
            code = "INVALID_INPUT"
        elif status_code == 404:
            code = "NOT_FOUND"
        elif status_code == 405:
            code = "METHOD_NOT_ALLOWED"
        elif status_code == 409:
            code = "CONFLICT"
        else:
            code = "INTERNAL_ERROR"
    retryable = bool(extra.pop("retryable", False))
    details = dict(extra)
    body: Dict[str, Any] = {
        "success": False,
        "error": message,
        "error_envelope": {
            "code": code,
            "message": message,
            "retryable": retryable,
            "details": details,
        },
    }
    body.update(details)
    return _response(status_code, body)


def _api_error(exc: ApiError) -> Dict[str, Any]:
    return _error(
        exc.status_code,
        exc.message,
        code=exc.code,
        retryable=exc.retryable,
        **exc.details,
    )


def _json_body(event: Dict[str, Any]) -> Dict[str, Any]:
    """Parse the JSON object body of an API Gateway event.

    Raises InvalidArgument for malformed JSON or a non-object payload. An
    absent body parses as an empty object.
    """
    raw = event.get("body")
    if raw in (None, ""):
        return {}
    if isinstance(raw, dict):
        return raw

    if event.get("isBase64Encoded"):
        try:
            raw = base64.b64decode(raw).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise InvalidArgument("Request body must be valid JSON") from exc

    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise InvalidArgument("Request body must be valid JSON") from exc

    if not isinstance(parsed, dict):
        raise InvalidArgument("JSON body must be an object")
    return parsed


def _query_params(event: Dict[str, Any]) -> Dict[str, str]:
    return event.get("queryStringParameters") or {}


def _path_method(event: Dict[str, Any]) -> Tuple[str, str]:
    """Extract HTTP method and path from an API Gateway v1 or v2 event."""
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    method = (http.get("method") or event.get("httpMethod") or "GET").upper()
    path = event.get("rawPath") or http.get("path") or event.get("path") or "/"
    return method, path.rstrip("/") or "/"
