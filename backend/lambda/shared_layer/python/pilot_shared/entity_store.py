"""pilot_shared.entity_store — Generic kit_id-keyed row access for entity tables.

Injection boundary:
    - table names come only from config.ENTITY_TABLES;
    - column names must match FIELD_NAME_RE and are composed with
      psycopg2.sql.Identifier, never interpolated;
    - every value is a bound parameter.

Field-name policy is lenient: keys failing FIELD_NAME_RE are dropped and
logged, and the update proceeds with whatever survives.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, List, Sequence, Tuple

import psycopg2.extras
from psycopg2 import sql

from pilot_shared import config
from pilot_shared.db import ConnectionPool, get_pool
from pilot_shared.errors import InvalidArgument, NotFound, translate_db_errors
from pilot_shared.serialization import _is_non_finite

logger = logging.getLogger(__name__)

__all__ = [
    "EntityStore",
    "FIELD_NAME_RE",
    "KIT_ID_COLUMN",
    "prepare_fields",
    "require_kit_id",
]

FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
KIT_ID_COLUMN = "kit_id"


def require_kit_id(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument('"kit_id" is required and must be a non-empty string')
    return value


def _require_table(table: str) -> str:
    if table not in config.ENTITY_TABLES:
        raise InvalidArgument(f"Unknown table: {table!r}")
    return table


def prepare_fields(body: Dict[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
    """Return (updatable fields, dropped names) from a request body.

    kit_id is positional and never updatable. null values pass through so
    callers can clear a column.
    """
    fields: Dict[str, Any] = {}
    dropped: List[str] = []
    for name, value in body.items():
        if name == KIT_ID_COLUMN:
            continue
        if not isinstance(name, str) or not FIELD_NAME_RE.fullmatch(name):
            dropped.append(str(name))
            continue
        fields[name] = value

    if dropped:
        logger.warning("Dropped invalid field names: %s", dropped)
    if not fields:
        raise InvalidArgument("No valid fields to update. Send at least one field besides kit_id.")

    bad = sorted(name for name, value in fields.items() if _is_non_finite(value))
    if bad:
        raise InvalidArgument("Field values must be finite numbers", fields=bad)
    return fields, dropped


def _bind(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return psycopg2.extras.Json(value)
    return value


class EntityStore:
    def __init__(self, pool_factory: Callable[[], ConnectionPool] = get_pool) -> None:
        self._pool_factory = pool_factory

    def list_by_kit_id(self, table: str, kit_id: Any) -> List[Dict[str, Any]]:
        table = _require_table(table)
        kit_id = require_kit_id(kit_id)
        query = sql.SQL("SELECT * FROM {table} WHERE {kit_col} = %s").format(
            table=sql.Identifier(table),
            kit_col=sql.Identifier(KIT_ID_COLUMN),
        )
        with translate_db_errors(table):
            with self._pool_factory().connection() as conn:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                    cur.execute(query, (kit_id,))
                    rows = cur.fetchall()
        return [dict(row) for row in rows]

    def update_by_kit_id(self, table: str, kit_id: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Update the kit's row(s), inserting one when the table's policy allows.

        ``fields`` must already have been through prepare_fields(). The update
        and the fallback insert share one transaction; a unique violation on
        the insert surfaces as Conflict.
        """
        table = _require_table(table)
        kit_id = require_kit_id(kit_id)
        if not fields:
            raise InvalidArgument("No valid fields to update. Send at least one field besides kit_id.")
        for name in fields:
            if name == KIT_ID_COLUMN or not FIELD_NAME_RE.fullmatch(name):
                raise InvalidArgument(f"Invalid field name: {name!r}")

        policy = config.table_policy(table)
        columns: Sequence[str] = list(fields)
        values = [_bind(fields[c]) for c in columns]

        update = sql.SQL("UPDATE {table} SET {assignments} WHERE {kit_col} = %s").format(
            table=sql.Identifier(table),
            assignments=sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(c)) for c in columns
            ),
            kit_col=sql.Identifier(KIT_ID_COLUMN),
        )

        created = False
        with translate_db_errors(table):
            with self._pool_factory().connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(update, (*values, kit_id))
                    updated = cur.rowcount
                    if updated == 0 and policy.insert_on_missing:
                        insert = sql.SQL("INSERT INTO {table} ({columns}) VALUES ({values})").format(
                            table=sql.Identifier(table),
                            columns=sql.SQL(", ").join(
                                sql.Identifier(c) for c in (KIT_ID_COLUMN, *columns)
                            ),
                            values=sql.SQL(", ").join([sql.Placeholder()] * (len(columns) + 1)),
                        )
                        cur.execute(insert, (kit_id, *values))
                        updated = cur.rowcount
                        created = True

        if updated == 0:
            raise NotFound(f"No {table} row for kit_id", kit_id=kit_id)

        logger.info(
            "[INFO] %s update kit_id=%s columns=%s updated=%d created=%s",
            table, kit_id, list(columns), updated, created,
        )
        return {"ok": True, "kit_id": kit_id, "updated": updated, "created": created}

    def find_kit_ids_by_email(self, email: str) -> List[str]:
        """Resolve an email address to kit_ids through the users table."""
        if not isinstance(email, str) or not email.strip():
            return []
        query = sql.SQL(
            "SELECT DISTINCT {kit_col} FROM {table} "
            "WHERE lower(email) = lower(%s) AND {kit_col} IS NOT NULL"
        ).format(
            table=sql.Identifier("users"),
            kit_col=sql.Identifier(KIT_ID_COLUMN),
        )
        with translate_db_errors("users"):
            with self._pool_factory().connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, (email.strip(),))
                    rows = cur.fetchall()
        return [row[0] for row in rows]
