"""pilot_shared.db — Process-wide PostgreSQL connection pool.

The pool is created lazily on first use and kept for the life of the Lambda
container; there is no explicit teardown. A bounded semaphore caps concurrent
checkouts at DB_POOL_MAX so extra callers wait for a free connection instead
of failing with PoolError.

Credentials come from the DB_* environment variables, or from a Secrets
Manager secret when DB_SECRET_ID is set (RDS-managed secret JSON shape:
host, port, dbname, username, password).
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import psycopg2
from psycopg2 import pool as pg_pool

from pilot_shared import config
from pilot_shared.aws_clients import _get_secretsmanager
from pilot_shared.errors import Unavailable

logger = logging.getLogger(__name__)

__all__ = ["ConnectionPool", "get_pool"]


def _connect_kwargs() -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "host": config.DB_HOST,
        "port": config.DB_PORT,
        "dbname": config.DB_NAME,
        "user": config.DB_USER,
        "password": config.DB_PASSWORD,
    }
    if config.DB_SECRET_ID:
        resp = _get_secretsmanager().get_secret_value(SecretId=config.DB_SECRET_ID)
        secret = json.loads(resp.get("SecretString") or "{}")
        params.update(
            {
                "host": secret.get("host", params["host"]),
                "port": int(secret.get("port", params["port"])),
                "dbname": secret.get("dbname", params["dbname"]),
                "user": secret.get("username", params["user"]),
                "password": secret.get("password", params["password"]),
            }
        )
    params.update(
        {
            "sslmode": config.DB_SSLMODE,
            "connect_timeout": config.DB_CONNECT_TIMEOUT,
            "options": f"-c statement_timeout={config.DB_STATEMENT_TIMEOUT_MS}",
            "application_name": "pilot-intake-api",
        }
    )
    return params


class ConnectionPool:
    """Thin wrapper over ThreadedConnectionPool with waiting checkout.

    ``connection()`` yields a connection inside a transaction: the block
    commits on success and rolls back on any exception. Connections that
    were closed underneath us are discarded rather than returned.
    """

    def __init__(self, maxconn: int, wait_seconds: float, **connect_kwargs: Any) -> None:
        self._maxconn = maxconn
        self._wait_seconds = wait_seconds
        self._slots = threading.BoundedSemaphore(maxconn)
        try:
            self._pool = pg_pool.ThreadedConnectionPool(0, maxconn, **connect_kwargs)
        except psycopg2.Error as exc:
            raise Unavailable("Database connection failed") from exc

    @contextmanager
    def connection(self) -> Iterator[Any]:
        if not self._slots.acquire(timeout=self._wait_seconds):
            raise Unavailable("Timed out waiting for a database connection")
        try:
            try:
                conn = self._pool.getconn()
            except psycopg2.OperationalError as exc:
                raise Unavailable("Database connection failed") from exc
            discard = False
            try:
                yield conn
                conn.commit()
            except BaseException:
                if conn.closed:
                    discard = True
                else:
                    try:
                        conn.rollback()
                    except psycopg2.Error:
                        discard = True
                raise
            finally:
                self._pool.putconn(conn, close=discard or bool(conn.closed))
        finally:
            self._slots.release()


_pool: Optional[ConnectionPool] = None
_pool_lock = threading.Lock()


def get_pool() -> ConnectionPool:
    """Get (or create) the process-wide connection pool."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                logger.info("[INFO] creating connection pool host=%s max=%d", config.DB_HOST, config.DB_POOL_MAX)
                _pool = ConnectionPool(
                    config.DB_POOL_MAX,
                    config.DB_POOL_WAIT_SECONDS,
                    **_connect_kwargs(),
                )
    return _pool


