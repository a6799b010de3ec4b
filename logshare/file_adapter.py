"""
Local filesystem storage for uploaded artifacts.

Stored names are generated as ``<epoch-ms>-<16 hex>-<sanitized name>``;
the retrieval side only accepts names of exactly that shape, then resolves
them under a fixed root and re-checks containment after resolution.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
import tempfile
from pathlib import Path

from flask import Response, send_file
from werkzeug.utils import secure_filename

from logshare.audit_logging import security_alert
from logshare.errors import NotFound, ValidationFailed

logger = logging.getLogger(__name__)

MAX_FILENAME_LENGTH = 255
MAX_SANITIZED_LENGTH = 200
FILENAME_PATTERN = re.compile(r"^\d{13}-[0-9a-f]{16}-[A-Za-z0-9._-]+$")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")

INVALID_FILENAME = "invalid filename"
FILE_NOT_FOUND = "not found"


def sanitize_filename(name: str) -> str:
    """Single-pass allowlist substitution; the result never contains a separator."""
    sanitized = _UNSAFE_CHARS.sub("_", name or "")
    return sanitized[-MAX_SANITIZED_LENGTH:] or "upload"


def random_hex(nbytes: int = 8) -> str:
    return secrets.token_hex(nbytes)


def generate_storage_name(original_name: str, timestamp_ms: int, random_id: str) -> str:
    return f"{timestamp_ms}-{random_id}-{sanitize_filename(original_name)}"


def is_valid_storage_name(filename: str) -> bool:
    return (
        isinstance(filename, str)
        and 0 < len(filename) <= MAX_FILENAME_LENGTH
        and FILENAME_PATTERN.fullmatch(filename) is not None
    )


class LocalArtifactStorage:
    """Writes artifacts under a root directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def write(self, filename: str, data: bytes) -> Path:
        if not is_valid_storage_name(filename):
            raise ValueError(f"Refusing to write non-generated filename: {filename!r}")
        dest = self.root / filename
        # "x" mode: a name collision is an error, never an overwrite
        with open(dest, "xb") as fh:
            fh.write(data)
        logger.info("Stored artifact %s (%d bytes)", dest.name, len(data))
        return dest

    def scratch_write(self, data: bytes) -> None:
        """Write data to a throwaway file under the root, then remove it.

        The temp name never matches the storage-name pattern, so it cannot
        be served while it exists.
        """
        fd, tmp = tempfile.mkstemp(prefix=".scratch-", dir=str(self.root))
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
        finally:
            os.unlink(tmp)


class RetrievalGateway:
    """Serves stored artifacts by their generated filename.

    Every rejection collapses to one of two messages so responses do not
    reveal anything about the storage layout.
    """

    def __init__(self, root: str | Path, mimetypes: dict[str, str] | None = None) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        # extension -> content type; None means everything is text/plain
        self.mimetypes = mimetypes

    def resolve(self, filename: str) -> Path:
        if not is_valid_storage_name(filename):
            security_alert("retrieval_rejected", reason="pattern", requested=str(filename)[:64])
            raise ValidationFailed(INVALID_FILENAME)

        root = self.root.resolve()
        target = (root / filename).resolve()
        if not target.is_relative_to(root) or target == root:
            security_alert("retrieval_rejected", reason="containment", requested=filename)
            raise ValidationFailed(INVALID_FILENAME)
        if not target.is_file():
            raise NotFound(FILE_NOT_FOUND)
        return target

    def content_type(self, filename: str) -> str:
        if self.mimetypes is None:
            return "text/plain; charset=utf-8"
        ext = "." + filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        return self.mimetypes.get(ext, "application/octet-stream")

    def read_bytes(self, filename: str) -> bytes:
        return self.resolve(filename).read_bytes()

    def read_text(self, filename: str) -> str:
        return self.read_bytes(filename).decode("utf-8", errors="replace")

    def serve(self, filename: str) -> Response:
        path = self.resolve(filename)
        display_name = secure_filename(filename) or "download"
        resp = send_file(
            str(path),
            mimetype=self.content_type(filename),
            as_attachment=False,
            download_name=display_name,
            conditional=False,
            etag=False,
        )
        resp.headers["Content-Disposition"] = f'inline; filename="{display_name}"'
        resp.headers["X-Content-Type-Options"] = "nosniff"
        return resp
