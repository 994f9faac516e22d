"""pilot_shared.state_store — Key-value state table access.

Expects table:

    CREATE TABLE state_machine_state (
        key        TEXT PRIMARY KEY,
        value      JSONB,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import psycopg2.extras
from psycopg2 import sql

from pilot_shared import config
from pilot_shared.db import ConnectionPool, get_pool
from pilot_shared.errors import InvalidArgument, NotFound, translate_db_errors

logger = logging.getLogger(__name__)

__all__ = ["StateStore", "require_key"]


def require_key(key: Any) -> str:
    if not isinstance(key, str) or not key:
        raise InvalidArgument('"key" is required and must be a non-empty string')
    return key


class StateStore:
    def __init__(
        self,
        pool_factory: Callable[[], ConnectionPool] = get_pool,
        table: Optional[str] = None,
    ) -> None:
        self._pool_factory = pool_factory
        self._table = table or config.STATE_TABLE

    def read(self, key: Any) -> Dict[str, Any]:
        """Return {key, value, updated_at} or raise NotFound."""
        key = require_key(key)
        query = sql.SQL("SELECT key, value, updated_at FROM {table} WHERE key = %s").format(
            table=sql.Identifier(self._table)
        )
        with translate_db_errors(self._table):
            with self._pool_factory().connection() as conn:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                    cur.execute(query, (key,))
                    row = cur.fetchone()

        if row is None:
            raise NotFound("Not found", key=key)
        return {"key": row["key"], "value": row["value"], "updated_at": row["updated_at"]}

    def write(self, key: Any, value: Any = None) -> Dict[str, Any]:
        """Insert or replace the value for key in one statement."""
        key = require_key(key)
        query = sql.SQL(
            "INSERT INTO {table} (key, value, updated_at) VALUES (%s, %s::jsonb, now()) "
            "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = now()"
        ).format(table=sql.Identifier(self._table))
        with translate_db_errors(self._table):
            with self._pool_factory().connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, (key, psycopg2.extras.Json(value)))

        logger.info("[INFO] state write key=%s", key)
        return {"ok": True, "key": key, "value": value}
