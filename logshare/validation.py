"""Lightweight input validation middleware.

Conservative checks that run before any route:
- Enforces MAX_CONTENT_LENGTH (redundant with Werkzeug but explicit)
- Limits query parameter and view-arg lengths

Configure limits via app.config: MAX_QUERY_PARAM_LENGTH, MAX_PATH_PARAM_LENGTH.
"""
from http import HTTPStatus

from flask import jsonify, request


def _reject(message: str, status: HTTPStatus):
    resp = jsonify({"error": message})
    resp.status_code = status
    return resp


def init_validation(app):
    max_qlen = int(app.config.get("MAX_QUERY_PARAM_LENGTH", 512))
    max_plen = int(app.config.get("MAX_PATH_PARAM_LENGTH", 256))

    @app.before_request
    def _validate_request():
        cl = request.content_length
        if cl is not None and cl > app.config.get("MAX_CONTENT_LENGTH", 6 * 1024 * 1024):
            return _reject("Request payload too large", HTTPStatus.REQUEST_ENTITY_TOO_LARGE)

        for k, v in request.args.items():
            if v is not None and len(v) > max_qlen:
                return _reject(f"Query parameter '{k}' is too long", HTTPStatus.BAD_REQUEST)

        # Path parameters: the retrieval routes collapse this into their own
        # generic message, so keep ours generic too.
        for v in (request.view_args or {}).values():
            if isinstance(v, str) and len(v) > max_plen:
                return _reject("invalid filename", HTTPStatus.BAD_REQUEST)
