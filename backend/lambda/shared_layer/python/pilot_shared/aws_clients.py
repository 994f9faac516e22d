"""pilot_shared.aws_clients — Lazy-singleton AWS service clients.

Clients are created on first call and cached for the life of the Lambda
container, so cold starts only pay for the clients a function uses.
"""

from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config

from pilot_shared import config

_sns = None
_secretsmanager = None


def _get_sns(region: Optional[str] = None):
    """Get (or create) the SNS client singleton."""
    global _sns
    if _sns is None:
        _sns = boto3.client(
            "sns",
            region_name=region or config.AWS_REGION_NAME,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _sns


def _get_secretsmanager(region: Optional[str] = None):
    """Get (or create) the Secrets Manager client singleton."""
    global _secretsmanager
    if _secretsmanager is None:
        _secretsmanager = boto3.client(
            "secretsmanager",
            region_name=region or config.AWS_REGION_NAME,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _secretsmanager
