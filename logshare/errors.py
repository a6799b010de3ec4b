"""Error hierarchy for logshare.

Every error carries the HTTP status it maps to and a message that is safe to
show to clients. Anything more detailed belongs in the server log.
"""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class LogshareError(Exception):
    """Base class for all logshare errors."""

    status = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, headers: dict[str, str] | None = None) -> None:
        self.message = message
        self.headers = headers or {}
        super().__init__(message)


class ValidationFailed(LogshareError):
    """Bad tag format, oversized file, disallowed extension or content."""

    status = HTTPStatus.BAD_REQUEST


class AuthRequired(LogshareError):
    status = HTTPStatus.UNAUTHORIZED


class NotFound(LogshareError):
    status = HTTPStatus.NOT_FOUND


class RateLimited(LogshareError):
    status = HTTPStatus.TOO_MANY_REQUESTS


class InternalFailure(LogshareError):
    """I/O or parse failure. The message is generic; details are logged."""


def register_error_handlers(app: Any) -> None:
    @app.errorhandler(LogshareError)
    def _handle_logshare_error(exc: LogshareError):
        resp = jsonify({"error": exc.message})
        resp.status_code = exc.status
        for k, v in exc.headers.items():
            resp.headers[k] = v
        return resp

    @app.errorhandler(413)
    def _handle_too_large(_exc):
        return jsonify({"error": "Request payload too large"}), HTTPStatus.REQUEST_ENTITY_TOO_LARGE

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "Internal server error"}), HTTPStatus.INTERNAL_SERVER_ERROR
