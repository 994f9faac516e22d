"""pilot_shared.errors — API error taxonomy and PostgreSQL error mapping.

Every error a handler can report to a caller is an ``ApiError`` subclass
carrying its HTTP status and envelope code. Driver errors are translated by
SQLSTATE in ``classify_db_error``; anything it returns ``None`` for is an
unknown fault and is left to propagate.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import psycopg2
from psycopg2 import errorcodes

__all__ = [
    "ApiError",
    "Conflict",
    "InvalidArgument",
    "NotFound",
    "SchemaMissing",
    "TypeMismatch",
    "Unavailable",
    "classify_db_error",
    "translate_db_errors",
]


class ApiError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details


class InvalidArgument(ApiError):
    status_code = 400
    code = "INVALID_INPUT"


class TypeMismatch(ApiError):
    status_code = 400
    code = "TYPE_MISMATCH"


class NotFound(ApiError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(ApiError):
    status_code = 409
    code = "CONFLICT"


class SchemaMissing(ApiError):
    status_code = 500
    code = "SCHEMA_MISSING"


class Unavailable(ApiError):
    status_code = 500
    code = "UNAVAILABLE"
    retryable = True


# SQLSTATE class 22 is "data exception" (bad literal, out of range, ...).
_TYPE_MISMATCH_CODES = {
    errorcodes.DATATYPE_MISMATCH,
    errorcodes.CANNOT_COERCE,
}


def classify_db_error(exc: BaseException, table: Optional[str] = None) -> Optional[ApiError]:
    """Map a psycopg2 exception to the API taxonomy, or None if unknown."""
    if not isinstance(exc, psycopg2.Error):
        return None

    pgcode = getattr(exc, "pgcode", None) or ""
    detail = getattr(getattr(exc, "diag", None), "message_primary", None) or ""

    if pgcode == errorcodes.UNDEFINED_TABLE:
        return SchemaMissing(f"Table missing: {table or 'unknown'}. Run the schema migration.")
    if pgcode == errorcodes.UNIQUE_VIOLATION:
        return Conflict("Row already exists for this kit_id", detail=detail)
    if pgcode == errorcodes.UNDEFINED_COLUMN:
        return InvalidArgument("Unknown field", detail=detail)
    if pgcode.startswith("22") or pgcode in _TYPE_MISMATCH_CODES:
        return TypeMismatch("Field value does not match column type", detail=detail)
    if pgcode == errorcodes.QUERY_CANCELED:
        return Unavailable("Database statement timed out")
    if isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError)):
        return Unavailable("Database connection failed")
    return None


@contextmanager
def translate_db_errors(table: Optional[str] = None) -> Iterator[None]:
    """Re-raise psycopg2 errors inside the block as ApiError when mapped."""
    try:
        yield
    except psycopg2.Error as exc:
        mapped = classify_db_error(exc, table)
        if mapped is None:
            raise
        raise mapped from exc
