from __future__ import annotations

import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from functools import wraps
from http import HTTPStatus

import yaml
from flask import Blueprint, Response, current_app, jsonify, request

from logshare.anti_bot import ChallengeService
from logshare.audit_logging import audit_event
from logshare.auth import require_identity
from logshare.errors import InternalFailure, LogshareError, ValidationFailed
from logshare.file_adapter import RetrievalGateway
from logshare.ingestion import AuthenticatedUploader, UploadIngestor, UploadSubmission
from logshare.metadata_store import MetadataStore, parse_query
from logshare.rate_lim import FixedWindowRateLimiter, rate_limited

logger = logging.getLogger(__name__)

CHALLENGE_ACTIONS = ("upload",)

# Content types served for authenticated uploads; anything else is octet-stream.
FILES_MIMETYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".txt": "text/plain; charset=utf-8",
    ".log": "text/plain; charset=utf-8",
    ".csv": "text/csv; charset=utf-8",
    ".json": "application/json",
    ".pdf": "application/pdf",
}


@dataclass
class LogshareServices:
    challenges: ChallengeService
    limiter: FixedWindowRateLimiter
    index: MetadataStore
    log_gateway: RetrievalGateway
    files_gateway: RetrievalGateway
    ingestor: UploadIngestor
    uploader: AuthenticatedUploader


def _services() -> LogshareServices:
    return current_app.extensions["logshare"]


# ---------------------------------------------------------------------------
# Route latency window
# ---------------------------------------------------------------------------


class LatencyWindow:
    """Most recent route durations plus success/error counters."""

    def __init__(self, size: int = 5000) -> None:
        self._samples: deque[float] = deque(maxlen=size)
        self._lock = threading.Lock()
        self.ok = 0
        self.err = 0

    def record(self, seconds: float, failed: bool) -> None:
        with self._lock:
            self._samples.append(seconds)
            if failed:
                self.err += 1
            else:
                self.ok += 1

    def percentile_ms(self, p: float) -> int:
        with self._lock:
            ordered = sorted(self._samples)
        if not ordered:
            return 0
        return int(ordered[round(p * (len(ordered) - 1))] * 1000)

    def snapshot(self) -> dict[str, int]:
        return {
            "p50_ms": self.percentile_ms(0.50),
            "p95_ms": self.percentile_ms(0.95),
            "ok": self.ok,
            "err": self.err,
        }


LATENCY = LatencyWindow()


def timed(f):
    @wraps(f)
    def _timed(*args, **kwargs):
        started = time.perf_counter()
        failed = True
        try:
            resp = f(*args, **kwargs)
            failed = False
            return resp
        finally:
            LATENCY.record(time.perf_counter() - started, failed)

    return _timed


def _list_preset() -> str:
    return "search" if request.args.get("q") else "api"


# ---------------------------------------------------------------------------
# Flask blueprint and routes
# ---------------------------------------------------------------------------

blueprint = Blueprint("logshare", __name__)

# -------------------- Health --------------------


@blueprint.route("/health", methods=["GET"])
def health() -> tuple[Response, int]:
    return jsonify({"ok": True}), 200


@blueprint.route("/health/components", methods=["GET"])
def health_components_route() -> tuple[Response, int]:
    svc = _services()
    now_iso = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
    report = svc.index.load()
    index_status = "ok" if report.clean else "degraded"
    components = [
        {"id": "api", "status": "ok", "metrics": LATENCY.snapshot()},
        {"id": "rate_limiter", "status": "ok", "metrics": {"tracked_keys": len(svc.limiter)}},
        {"id": "metadata_index", "status": index_status, "report": report.to_dict()},
    ]
    return jsonify({"components": components, "generated_at": now_iso}), 200


@blueprint.route("/openapi", methods=["GET"])
def get_openapi_spec() -> tuple[Response, int]:
    openapi_path = os.path.join(os.path.dirname(__file__), "openapi.yaml")
    try:
        with open(openapi_path, encoding="utf-8") as f:
            openapi_spec = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error("Failed to load OpenAPI specification: %s", e)
        return jsonify({"error": "OpenAPI specification not available"}), 500
    return jsonify(openapi_spec), 200


# -------------------- Challenge --------------------


@blueprint.route("/api/challenge", methods=["GET"])
@rate_limited("api")
def challenge_route() -> tuple[Response, int]:
    action = request.args.get("action", "")
    if action not in CHALLENGE_ACTIONS:
        raise ValidationFailed("Unknown challenge action")
    challenge = _services().challenges.issue()
    return jsonify(challenge.to_dict()), 200


# -------------------- Anonymous log uploads --------------------


@blueprint.route("/api/logs-upload", methods=["POST"])
@rate_limited("logs_upload")
@timed
def logs_upload_route() -> tuple[Response, int]:
    f = request.files.get("file")
    submission = UploadSubmission(
        original_name=(f.filename or "") if f else "",
        data=f.read() if f else b"",
        technology=request.form.get("technology"),
        log_type=request.form.get("logType"),
        fields=request.form,
    )
    try:
        result = _services().ingestor.ingest(submission)
    except LogshareError:
        raise
    except Exception:
        logger.exception("Unexpected failure while ingesting %r", submission.original_name)
        raise InternalFailure("Failed to upload file") from None
    return jsonify(result.payload), 200


@blueprint.route("/api/logs-upload", methods=["GET"])
@rate_limited(_list_preset)
@timed
def logs_list_route() -> tuple[Response, int]:
    query = parse_query(request.args)
    return jsonify(_services().index.query(query)), 200


@blueprint.route("/api/logs-upload/detail/<string:record_id>", methods=["GET"])
@rate_limited("api")
@timed
def logs_detail_route(record_id: str) -> tuple[Response, int]:
    svc = _services()
    record = svc.index.get(record_id)
    if record is None:
        return jsonify({"error": "Log not found"}), HTTPStatus.NOT_FOUND
    try:
        content = svc.log_gateway.read_text(record.filename)
    except (LogshareError, OSError):
        logger.warning("Content for %s unavailable; serving preview", record.id)
        content = record.preview or "Content not available"
    return jsonify({**record.to_dict(), "content": content}), 200


@blueprint.route("/api/logs-upload/<path:filename>", methods=["GET"])
@timed
def logs_file_route(filename: str) -> Response:
    return _services().log_gateway.serve(filename)


# -------------------- Authenticated uploads --------------------


@blueprint.route("/api/upload", methods=["POST"])
@rate_limited("authenticated_upload")
@timed
def upload_create_route() -> tuple[Response, int]:
    username = require_identity()
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationFailed("No file provided")
    payload = _services().uploader.upload(f.filename, f.read(), username)
    return jsonify(payload), 200


@blueprint.route("/uploads/<path:filename>", methods=["GET"])
@timed
def uploaded_file_route(filename: str) -> Response:
    audit_event("file_served", requested=filename[:64])
    return _services().files_gateway.serve(filename)
