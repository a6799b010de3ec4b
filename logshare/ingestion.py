"""
Upload ingestion pipeline.

Stages run strictly in order and may short-circuit, except the timing
check which only logs:

    RECEIVED -> HONEYPOT_CHECK -> CHALLENGE_VERIFY -> TIMING_CHECK
    -> METADATA_VALIDATE -> SIZE_CHECK -> EXTENSION_CHECK
    -> CONTENT_VALIDATE -> PERSIST -> INDEX_APPEND -> RESPOND

A honeypot hit returns a fabricated success with the same shape as a real
one. It does the same storage and index work as a real upload, but both
writes are discarded, so its latency tracks the real path.

The artifact is written before the index entry is appended. A failed
append leaves an orphaned file behind, never an entry without a file.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from logshare.anti_bot import (
    MAGIC_BYTES,
    ChallengeService,
    check_honeypot,
    check_magic_bytes,
    check_submission_timing,
    file_extension,
    now_ms,
    validate_file_extension,
    validate_log_content,
)
from logshare.audit_logging import audit_event, security_alert
from logshare.errors import InternalFailure, ValidationFailed
from logshare.file_adapter import LocalArtifactStorage, generate_storage_name, random_hex
from logshare.metadata_store import MAX_FILE_SIZE, PREVIEW_MAX_CHARS, MetadataStore, UploadRecord

logger = logging.getLogger(__name__)

PREVIEW_LINES = 10
MAX_TAG_LENGTH = 100
LOG_EXTENSIONS = (".log", ".txt")
LOG_URL_PREFIX = "/api/logs-upload"

AUTHENTICATED_EXTENSIONS = (
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".txt", ".log", ".csv", ".json", ".pdf",
)
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")
FILES_URL_PREFIX = "/uploads"

_TAG_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class PipelineStage(str, Enum):
    RECEIVED = "received"
    HONEYPOT_CHECK = "honeypot_check"
    CHALLENGE_VERIFY = "challenge_verify"
    TIMING_CHECK = "timing_check"
    METADATA_VALIDATE = "metadata_validate"
    SIZE_CHECK = "size_check"
    EXTENSION_CHECK = "extension_check"
    CONTENT_VALIDATE = "content_validate"
    PERSIST = "persist"
    INDEX_APPEND = "index_append"
    RESPOND = "respond"


@dataclass
class UploadSubmission:
    original_name: str
    data: bytes
    technology: str | None = None
    log_type: str | None = None
    fields: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class IngestResult:
    payload: dict[str, Any]
    stage: PipelineStage
    decoy: bool = False
    record: UploadRecord | None = None


class StageRejected(ValidationFailed):
    """A validation failure that remembers where in the pipeline it happened."""

    def __init__(self, stage: PipelineStage, message: str) -> None:
        super().__init__(message)
        self.stage = stage


def validate_tag(value: Any, label: str) -> str | None:
    """Return an error message for a bad technology/logType tag, else None."""
    if not value or not isinstance(value, str):
        return f"{label} is required"
    if len(value) > MAX_TAG_LENGTH:
        return f"{label} name too long"
    if not _TAG_RE.match(value):
        return f"{label} contains invalid characters"
    return None


def extract_preview(data: bytes, max_lines: int = PREVIEW_LINES) -> tuple[str, int]:
    lines = data.decode("utf-8", errors="replace").split("\n")
    preview = "\n".join(lines[:max_lines])[:PREVIEW_MAX_CHARS]
    return preview, len(lines)


def _iso_from_ms(ts_ms: int) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class UploadIngestor:
    def __init__(
        self,
        challenges: ChallengeService,
        storage: LocalArtifactStorage,
        index: MetadataStore,
        clock: Callable[[], int] = now_ms,
        max_file_size: int = MAX_FILE_SIZE,
        preview_lines: int = PREVIEW_LINES,
        min_submit_ms: int = 2000,
        id_factory: Callable[[], str] = random_hex,
    ) -> None:
        self.challenges = challenges
        self.storage = storage
        self.index = index
        self._clock = clock
        self.max_file_size = max_file_size
        self.preview_lines = preview_lines
        self.min_submit_ms = min_submit_ms
        self._id_factory = id_factory

    def _identity(self, original_name: str) -> tuple[str, str, int]:
        now = self._clock()
        random_id = self._id_factory()
        return random_id, generate_storage_name(original_name, now, random_id), now

    def _success_payload(self, sub: UploadSubmission, random_id: str, storage_name: str) -> dict[str, Any]:
        return {
            "success": True,
            "url": f"{LOG_URL_PREFIX}/{storage_name}",
            "id": random_id,
            "filename": sub.original_name,
            "technology": sub.technology or "",
            "logType": sub.log_type or "",
            "size": len(sub.data),
        }

    def _build_record(self, sub: UploadSubmission) -> UploadRecord:
        random_id, storage_name, created_ms = self._identity(sub.original_name)
        preview, line_count = extract_preview(sub.data, self.preview_lines)
        return UploadRecord(
            id=random_id,
            filename=storage_name,
            original_name=sub.original_name,
            technology=sub.technology or "",
            log_type=sub.log_type or "",
            uploaded_at=_iso_from_ms(created_ms),
            size=len(sub.data),
            preview=preview,
            line_count=line_count,
        )

    def _decoy(self, sub: UploadSubmission) -> IngestResult:
        record = self._build_record(sub)
        try:
            self.storage.scratch_write(sub.data)
            self.index.rehearse_append(record)
        except (OSError, ValueError):
            logger.exception("Decoy rehearsal failed")
        return IngestResult(
            payload=self._success_payload(sub, record.id, record.filename),
            stage=PipelineStage.HONEYPOT_CHECK,
            decoy=True,
        )

    def _verify_challenge(self, fields: Mapping[str, Any]) -> int:
        token = fields.get("_token")
        raw_ts = fields.get("_timestamp")
        if not token or raw_ts in (None, ""):
            raise StageRejected(PipelineStage.CHALLENGE_VERIFY, "Security verification required")
        try:
            issued_at = int(str(raw_ts))
        except ValueError:
            raise StageRejected(PipelineStage.CHALLENGE_VERIFY, "Security verification failed") from None
        result = self.challenges.verify(token, issued_at)
        if not result.valid:
            security_alert("challenge_failed", outcome=result.outcome.value)
            raise StageRejected(PipelineStage.CHALLENGE_VERIFY, result.reason)
        return issued_at

    def ingest(self, sub: UploadSubmission) -> IngestResult:
        stage = PipelineStage.RECEIVED
        if not sub.original_name or not sub.original_name.strip():
            raise StageRejected(stage, "No file provided")

        stage = PipelineStage.HONEYPOT_CHECK
        if not check_honeypot(sub.fields).valid:
            security_alert("honeypot_triggered", original_name=sub.original_name[:100])
            return self._decoy(sub)

        stage = PipelineStage.CHALLENGE_VERIFY
        issued_at = self._verify_challenge(sub.fields)

        stage = PipelineStage.TIMING_CHECK
        timing = check_submission_timing(issued_at, self._clock(), self.min_submit_ms)
        if not timing.valid:
            security_alert("suspicious_timing", elapsed_ms=self._clock() - issued_at)

        stage = PipelineStage.METADATA_VALIDATE
        for value, label in ((sub.technology, "Technology"), (sub.log_type, "Log type")):
            error = validate_tag(value, label)
            if error:
                raise StageRejected(stage, error)

        stage = PipelineStage.SIZE_CHECK
        if len(sub.data) > self.max_file_size:
            raise StageRejected(stage, f"File too large. Maximum size is {self.max_file_size // (1024 * 1024)}MB")

        stage = PipelineStage.EXTENSION_CHECK
        ext_result = validate_file_extension(sub.original_name, LOG_EXTENSIONS)
        if not ext_result.valid:
            raise StageRejected(stage, "Only log files allowed (.log, .txt)")

        stage = PipelineStage.CONTENT_VALIDATE
        content_result = validate_log_content(sub.data)
        if not content_result.valid:
            security_alert("content_rejected", outcome=content_result.outcome.value)
            raise StageRejected(stage, content_result.reason)

        stage = PipelineStage.PERSIST
        record = self._build_record(sub)
        random_id, storage_name = record.id, record.filename
        try:
            self.storage.write(storage_name, sub.data)
        except (OSError, ValueError):
            logger.exception("Failed to write artifact %s", storage_name)
            raise InternalFailure("Failed to upload file") from None

        stage = PipelineStage.INDEX_APPEND
        try:
            self.index.append(record)
        except (OSError, ValueError):
            logger.exception("Index append failed; artifact %s is orphaned", storage_name)
            raise InternalFailure("Failed to upload file") from None

        stage = PipelineStage.RESPOND
        audit_event("log_uploaded", record_id=random_id, stored_as=storage_name, size=record.size)
        return IngestResult(
            payload=self._success_payload(sub, random_id, storage_name), stage=stage, record=record
        )


class AuthenticatedUploader:
    """Upload variant for signed-in users: wider type allowlist, no index entry."""

    def __init__(
        self,
        storage: LocalArtifactStorage,
        clock: Callable[[], int] = now_ms,
        max_file_size: int = MAX_FILE_SIZE,
        id_factory: Callable[[], str] = random_hex,
    ) -> None:
        self.storage = storage
        self._clock = clock
        self.max_file_size = max_file_size
        self._id_factory = id_factory

    def upload(self, original_name: str, data: bytes, username: str) -> dict[str, Any]:
        if not original_name or not original_name.strip():
            raise ValidationFailed("No file provided")
        if len(data) > self.max_file_size:
            raise ValidationFailed(f"File too large. Maximum size is {self.max_file_size // (1024 * 1024)}MB")
        if not validate_file_extension(original_name, AUTHENTICATED_EXTENSIONS).valid:
            raise ValidationFailed(f"File type not allowed. Allowed: {', '.join(AUTHENTICATED_EXTENSIONS)}")

        ext = file_extension(original_name)
        result = check_magic_bytes(data, ext) if ext in MAGIC_BYTES else validate_log_content(data)
        if not result.valid:
            security_alert("content_rejected", outcome=result.outcome.value, user=username)
            raise ValidationFailed(result.reason)

        storage_name = generate_storage_name(original_name, self._clock(), self._id_factory())
        try:
            self.storage.write(storage_name, data)
        except (OSError, ValueError):
            logger.exception("Failed to write artifact %s", storage_name)
            raise InternalFailure("Failed to upload file") from None

        audit_event("file_uploaded", user=username, stored_as=storage_name, size=len(data))
        return {
            "success": True,
            "url": f"{FILES_URL_PREFIX}/{storage_name}",
            "filename": original_name,
            "isImage": ext in IMAGE_EXTENSIONS,
            "size": len(data),
        }
