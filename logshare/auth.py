"""Identity pass-through for the authenticated upload variant.

Sessions are established elsewhere; this module only verifies the signed
bearer token the site's auth layer hands out, using the shared AUTH_SECRET.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json

from flask import current_app, request

from logshare.audit_logging import security_alert
from logshare.errors import AuthRequired


def _parse_bearer(header_value: str) -> str:
    if not header_value:
        return ""
    v = header_value.strip()
    if v.lower().startswith("bearer "):
        return v.split(" ", 1)[1].strip()
    return v


def decode_token(token: str, secret: str) -> str | None:
    """Return the username carried by a valid token, else None."""
    if not token or "." not in token:
        return None
    payload_part, sig = token.rsplit(".", 1)
    padding = "=" * (-len(payload_part) % 4)
    try:
        payload_json = base64.urlsafe_b64decode((payload_part + padding).encode("ascii")).decode("utf-8")
        data = json.loads(payload_json)
    except (ValueError, UnicodeError):
        return None
    expected = hmac.new(secret.encode("utf-8"), payload_json.encode("utf-8"), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected.encode("ascii"), sig.encode("utf-8")):
        return None
    username = data.get("u") if isinstance(data, dict) else None
    return username if isinstance(username, str) and username else None


def require_identity() -> str:
    token = _parse_bearer(request.headers.get("Authorization", ""))
    username = decode_token(token, current_app.config["AUTH_SECRET"]) if token else None
    if not username:
        security_alert("auth_failed", reason="missing_or_invalid_token", token_present=bool(token))
        raise AuthRequired("Authentication required")
    return username
