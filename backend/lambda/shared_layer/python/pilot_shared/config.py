"""pilot_shared.config — Environment variables, table registry, logging.

All values are read once at import time. Tests override module attributes
directly (see test_layer.py) instead of mutating os.environ.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

__all__ = [
    "AWS_REGION_NAME",
    "CORS_ORIGIN",
    "DB_CONNECT_TIMEOUT",
    "DB_HOST",
    "DB_NAME",
    "DB_PASSWORD",
    "DB_POOL_MAX",
    "DB_POOL_WAIT_SECONDS",
    "DB_PORT",
    "DB_SECRET_ID",
    "DB_SSLMODE",
    "DB_STATEMENT_TIMEOUT_MS",
    "DB_USER",
    "ENTITY_TABLES",
    "INSERT_ON_MISSING_TABLES",
    "LOG_LEVEL",
    "NOTIFICATION_TOPIC_ARN",
    "STATE_TABLE",
    "TablePolicy",
    "WEBHOOK_SIGNING_KEY",
    "logger",
    "table_policy",
]


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


def _env_csv(name: str, default: str) -> FrozenSet[str]:
    raw = os.environ.get(name, default)
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

DB_HOST: str = os.environ.get("DB_HOST", "localhost")
DB_PORT: int = _env_int("DB_PORT", 5432)
DB_NAME: str = os.environ.get("DB_NAME", "postgres")
DB_USER: str = os.environ.get("DB_USER", "postgres")
DB_PASSWORD: str = os.environ.get("DB_PASSWORD", "")
DB_SECRET_ID: str = os.environ.get("DB_SECRET_ID", "")
DB_SSLMODE: str = os.environ.get("DB_SSLMODE", "require")
DB_POOL_MAX: int = max(1, _env_int("DB_POOL_MAX", 2))
DB_POOL_WAIT_SECONDS: int = _env_int("DB_POOL_WAIT_SECONDS", 10)
DB_CONNECT_TIMEOUT: int = _env_int("DB_CONNECT_TIMEOUT", 5)
DB_STATEMENT_TIMEOUT_MS: int = _env_int("DB_STATEMENT_TIMEOUT_MS", 10000)

STATE_TABLE: str = os.environ.get("STATE_TABLE", "state_machine_state")

# ---------------------------------------------------------------------------
# Entity tables
# ---------------------------------------------------------------------------

ENTITY_TABLES: tuple[str, ...] = ("actions", "users", "reports", "kits", "consents")

# Tables whose update endpoint creates the row when no row matches kit_id.
# kits and reports are written upstream, so a miss there is a 404.
INSERT_ON_MISSING_TABLES: FrozenSet[str] = _env_csv(
    "INSERT_ON_MISSING_TABLES", "actions,consents,users"
)

# Field that, when set truthy on an update, triggers the PDF email dispatcher.
_TRIGGER_FIELDS: Dict[str, str] = {
    "actions": "appointment_made",
    "consents": "toc_agreed",
}


@dataclass(frozen=True)
class TablePolicy:
    name: str
    insert_on_missing: bool
    trigger_field: Optional[str] = None


def table_policy(table: str) -> TablePolicy:
    """Return the update policy for one of ENTITY_TABLES."""
    if table not in ENTITY_TABLES:
        raise KeyError(table)
    return TablePolicy(
        name=table,
        insert_on_missing=table in INSERT_ON_MISSING_TABLES,
        trigger_field=_TRIGGER_FIELDS.get(table),
    )


# ---------------------------------------------------------------------------
# AWS / HTTP
# ---------------------------------------------------------------------------

AWS_REGION_NAME: str = os.environ.get(
    "AWS_REGION_NAME", os.environ.get("AWS_REGION", "us-east-1")
)
NOTIFICATION_TOPIC_ARN: str = os.environ.get("NOTIFICATION_TOPIC_ARN", "")
WEBHOOK_SIGNING_KEY: str = os.environ.get("WEBHOOK_SIGNING_KEY", "")
CORS_ORIGIN: str = os.environ.get("CORS_ORIGIN", "*")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO").upper()

logger = logging.getLogger()
logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
