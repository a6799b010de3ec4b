"""Small runtime secrets loader for logshare.

If the environment variable LOGSHARE_SECRET_ARN is present, this module
will read it from AWS Secrets Manager and set ANTIBOT_SECRET and
AUTH_SECRET in os.environ so the settings layer picks them up normally.

Failure to read secrets is logged but does not stop the application from
starting. Without ANTIBOT_SECRET the app generates a per-process secret,
so every instance behind a load balancer must share the Secrets Manager
entry for challenges to verify across instances.
"""
from __future__ import annotations

import json
import logging
import os

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

_SECRET_KEYS = ("ANTIBOT_SECRET", "AUTH_SECRET")


def load_logshare_secrets(client=None) -> list[str]:
    """Populate missing secret env vars. Returns the names that were set."""
    secret_arn = os.environ.get("LOGSHARE_SECRET_ARN")
    if not secret_arn:
        return []

    try:
        client = client or boto3.client("secretsmanager")
        resp = client.get_secret_value(SecretId=secret_arn)
    except (BotoCoreError, ClientError) as exc:
        logger.exception("Failed to fetch secret %s: %s", secret_arn, str(exc))
        return []

    secret_string = resp.get("SecretString")
    if not secret_string:
        logger.warning("Secret %s has no SecretString; skipping", secret_arn)
        return []

    try:
        data = json.loads(secret_string)
    except json.JSONDecodeError:
        logger.exception("Secret %s is not valid JSON", secret_arn)
        return []
    if not isinstance(data, dict):
        logger.warning("Secret %s is not a JSON object; skipping", secret_arn)
        return []

    loaded = []
    for key in _SECRET_KEYS:
        value = data.get(key)
        if value and key not in os.environ:
            os.environ[key] = str(value)
            loaded.append(key)
    return loaded
