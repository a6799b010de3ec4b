import json
import logging
import time
import uuid
from typing import Any

from flask import g, request

AUDIT_LOGGER = "audit"

# Attributes every LogRecord carries; anything else arrived through `extra`.
_RESERVED = frozenset(logging.LogRecord("", 0, "", 0, None, (), None).__dict__) | {"message", "asctime"}
# Correlation fields go right after the fixed header so log lines line up.
_LEADING = ("request_id", "client_ip", "operation", "stage", "duration_ms", "alert")
# Statuses that get a second, alert-flagged entry.
_ALERT_STATUSES = frozenset({401, 403, 429, 500})


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {k: v for k, v in record.__dict__.items() if k not in _RESERVED}
        payload: dict[str, Any] = {
            "ts": int(record.created * 1000),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update((k, fields.pop(k)) for k in _LEADING if k in fields)
        payload.update(fields)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _audit() -> logging.Logger:
    return logging.getLogger(AUDIT_LOGGER)


def _request_context() -> dict[str, Any]:
    rid = getattr(g, "_request_id", None) if g else None
    return {"request_id": rid} if rid else {}


def init_audit_logging(app) -> None:
    """Route the `audit` logger to stdout as JSON lines and log every request.

    Each request gets an id (from X-Request-ID, or a fresh uuid4) that is
    echoed back in the response header and attached to every audit entry
    emitted while the request is handled. Security alerts carry
    `alert: true` so a log pipeline can filter them without parsing messages.
    """
    audit_logger = _audit()
    audit_logger.setLevel(logging.INFO)
    if not audit_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        audit_logger.addHandler(handler)
        audit_logger.propagate = False

    @app.before_request
    def _start_request_audit():
        g._audit_start = time.monotonic()
        g._request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

    @app.after_request
    def _finish_request_audit(response):
        from logshare.rate_lim import get_client_ip

        request_id = getattr(g, "_request_id", None) or uuid.uuid4().hex
        started = getattr(g, "_audit_start", None)
        entry = {
            "type": "http_request",
            "request_id": request_id,
            "client_ip": get_client_ip(),
            "method": request.method,
            "path": request.path,
            "status_code": response.status_code,
            "duration_ms": int((time.monotonic() - started) * 1000) if started else 0,
        }
        try:
            audit_logger.info("http_request", extra=entry)
            if response.status_code in _ALERT_STATUSES:
                audit_logger.warning("security_alert", extra={**entry, "alert": True, "alert_type": "security"})
        except Exception:
            audit_logger.exception("failed to emit audit entry for %s", request.path)
        response.headers["X-Request-ID"] = request_id
        return response


def audit_event(message: str, **fields: Any) -> None:
    _audit().info(message, extra={**_request_context(), **fields})


def security_alert(message: str, **fields: Any) -> None:
    # WARNING so alerts survive an INFO-suppressing handler
    _audit().warning(message, extra={**_request_context(), **fields, "alert": True, "alert_type": "security"})


def index_audit(operation: str, **fields: Any) -> None:
    _audit().info("index_operation", extra={**_request_context(), "operation": operation, **fields})
