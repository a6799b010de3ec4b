import logging
import re
import secrets

from flask import Flask
from flask_cors import CORS

from logshare.anti_bot import ChallengeService, now_ms
from logshare.audit_logging import init_audit_logging
from logshare.config import get_settings
from logshare.core import FILES_MIMETYPES, LogshareServices, blueprint
from logshare.errors import register_error_handlers
from logshare.file_adapter import LocalArtifactStorage, RetrievalGateway
from logshare.ingestion import AuthenticatedUploader, UploadIngestor
from logshare.metadata_store import MetadataStore
from logshare.rate_lim import FixedWindowRateLimiter, init_rate_limiter
from logshare.secrets_loader import load_logshare_secrets
from logshare.validation import init_validation

log = logging.getLogger(__name__)


def _settings_config() -> dict:
    # Secrets Manager values land in os.environ before Settings reads it.
    try:
        load_logshare_secrets()
    except Exception:
        log.exception("secrets_loader failed - continuing without Secrets Manager")
    s = get_settings()
    return {
        "UPLOAD_DIR": s.upload_dir,
        "FILES_DIR": s.files_dir,
        "METADATA_FILE": s.metadata_file,
        "MAX_FILE_SIZE": s.max_file_size,
        "PREVIEW_LINES": s.preview_lines,
        "ANTIBOT_SECRET": s.antibot_secret,
        "AUTH_SECRET": s.auth_secret,
        "CHALLENGE_VALIDITY_MS": s.challenge_validity_seconds * 1000,
        "CLOCK_SKEW_MS": s.clock_skew_seconds * 1000,
        "MIN_SUBMIT_MS": int(s.min_submit_seconds * 1000),
        "RATE_LIMIT_DEFAULT": s.rate_limit_default,
        "RATE_LIMIT_SWEEP_SECONDS": s.rate_limit_sweep_seconds,
        "ALLOWED_ORIGINS": s.allowed_origins,
    }


def _build_services(app: Flask, clock) -> LogshareServices:
    cfg = app.config
    if not cfg.get("ANTIBOT_SECRET"):
        log.warning("ANTIBOT_SECRET not set; generated a per-process secret. Challenges will not survive a restart.")
        cfg["ANTIBOT_SECRET"] = secrets.token_hex(32)
    if not cfg.get("AUTH_SECRET"):
        log.warning("AUTH_SECRET not set; authenticated uploads will reject every token issued elsewhere.")
        cfg["AUTH_SECRET"] = secrets.token_hex(32)

    challenges = ChallengeService(
        cfg["ANTIBOT_SECRET"],
        clock=clock,
        validity_ms=cfg["CHALLENGE_VALIDITY_MS"],
        skew_ms=cfg["CLOCK_SKEW_MS"],
    )
    index = MetadataStore(cfg["METADATA_FILE"], max_size=cfg["MAX_FILE_SIZE"])
    log_storage = LocalArtifactStorage(cfg["UPLOAD_DIR"])
    files_storage = LocalArtifactStorage(cfg["FILES_DIR"])
    return LogshareServices(
        challenges=challenges,
        limiter=FixedWindowRateLimiter(clock=clock, sweep_interval=cfg["RATE_LIMIT_SWEEP_SECONDS"]),
        index=index,
        log_gateway=RetrievalGateway(cfg["UPLOAD_DIR"]),
        files_gateway=RetrievalGateway(cfg["FILES_DIR"], mimetypes=FILES_MIMETYPES),
        ingestor=UploadIngestor(
            challenges,
            log_storage,
            index,
            clock=clock,
            max_file_size=cfg["MAX_FILE_SIZE"],
            preview_lines=cfg["PREVIEW_LINES"],
            min_submit_ms=cfg["MIN_SUBMIT_MS"],
        ),
        uploader=AuthenticatedUploader(files_storage, clock=clock, max_file_size=cfg["MAX_FILE_SIZE"]),
    )


def create_app(config=None, clock=None):
    app = Flask(__name__)
    app.config.update(_settings_config())
    if config:
        app.config.update(config)
    # multipart overhead on top of the largest accepted file
    if not app.config.get("MAX_CONTENT_LENGTH"):
        app.config["MAX_CONTENT_LENGTH"] = app.config["MAX_FILE_SIZE"] + 1024 * 1024

    services = _build_services(app, clock or now_ms)
    app.extensions["logshare"] = services

    # Allow overriding via env var ALLOWED_ORIGINS (comma-separated)
    allowed_env = (app.config.get("ALLOWED_ORIGINS") or "").strip()
    if allowed_env:
        allowed_origins = [o.strip() for o in allowed_env.split(",") if o.strip()]
    else:
        allowed_origins = [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            re.compile(r"^https://.*\.vercel\.app$"),
        ]

    CORS(
        app,
        resources={r"/api/*": {"origins": allowed_origins}},
        methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        expose_headers=["X-RateLimit-Remaining", "Retry-After", "X-Request-ID"],
        max_age=600,
    )

    init_validation(app)
    init_rate_limiter(app)
    init_audit_logging(app)
    register_error_handlers(app)
    app.register_blueprint(blueprint)

    if not app.config.get("TESTING"):
        services.limiter.start()

    if not app.logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))
        app.logger.addHandler(handler)
    app.logger.setLevel("INFO")
    return app


if __name__ == "__main__":
    application = create_app()
    application.run(debug=True)
