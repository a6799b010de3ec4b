"""Anti-bot protection for anonymous uploads.

Provides:
- ChallengeService: stateless, HMAC-based time-bounded challenge tokens
- Honeypot, content, timing, extension and magic-byte checks

All checks return a CheckResult instead of raising so the ingestion
pipeline decides which outcomes reject, which are absorbed and which are
only logged.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

CHALLENGE_VALIDITY_MS = 5 * 60 * 1000
CLOCK_SKEW_MS = 60 * 1000
MIN_SUBMIT_MS = 2000
TOKEN_LENGTH = 32

HONEYPOT_FIELDS = ("website", "url", "email2", "phone")

_SCAN_PREFIX_CHARS = 1000
_DISALLOWED_SIGNATURES: list[re.Pattern[str]] = [
    re.compile(r"^MZ"),  # DOS/PE executable
    re.compile(r"^.ELF", re.DOTALL),  # ELF executable
    re.compile(r"^PK"),  # ZIP/JAR archive
    re.compile(r"<\?php", re.IGNORECASE),
    re.compile(r"^#!.*python", re.IGNORECASE),
    re.compile(r"^#!.*bash", re.IGNORECASE),
    re.compile(r"^#!.*sh", re.IGNORECASE),
    re.compile(r"<script[\s>]", re.IGNORECASE),
    re.compile(r"^%PDF"),
]

# extension -> accepted leading byte sequences
MAGIC_BYTES: dict[str, tuple[bytes, ...]] = {
    ".png": (b"\x89PNG\r\n\x1a\n",),
    ".jpg": (b"\xff\xd8\xff",),
    ".jpeg": (b"\xff\xd8\xff",),
    ".gif": (b"GIF87a", b"GIF89a"),
    ".webp": (b"RIFF",),
    ".pdf": (b"%PDF-",),
}


def now_ms() -> int:
    return int(time.time() * 1000)


class Outcome(str, Enum):
    OK = "ok"
    EXPIRED = "expired"
    FUTURE_TIMESTAMP = "future_timestamp"
    TAMPERED = "tampered"
    BOT_DETECTED = "bot_detected"
    BINARY_CONTENT = "binary_content"
    EMPTY = "empty"
    DISALLOWED_CONTENT = "disallowed_content"
    SUSPICIOUS_TIMING = "suspicious_timing"
    DISALLOWED_EXTENSION = "disallowed_extension"
    SIGNATURE_MISMATCH = "signature_mismatch"


@dataclass(frozen=True)
class CheckResult:
    outcome: Outcome = Outcome.OK
    reason: str = ""

    @property
    def valid(self) -> bool:
        return self.outcome is Outcome.OK


PASSED = CheckResult()


@dataclass(frozen=True)
class Challenge:
    token: str
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {"token": self.token, "timestamp": self.timestamp}


class ChallengeService:
    """Issues and verifies challenge tokens.

    A token is the truncated HMAC-SHA256 of the issuance timestamp under the
    service secret. Nothing is stored, so a token stays valid (and reusable)
    until it expires, and tokens do not survive a change of secret.
    """

    def __init__(
        self,
        secret: str,
        clock: Callable[[], int] = now_ms,
        validity_ms: int = CHALLENGE_VALIDITY_MS,
        skew_ms: int = CLOCK_SKEW_MS,
    ) -> None:
        if not secret:
            raise ValueError("ChallengeService requires a non-empty secret")
        self._secret = secret.encode("utf-8")
        self._clock = clock
        self.validity_ms = validity_ms
        self.skew_ms = skew_ms

    def _sign(self, timestamp: int) -> str:
        digest = hmac.new(self._secret, str(timestamp).encode("ascii"), hashlib.sha256).hexdigest()
        return digest[:TOKEN_LENGTH]

    def issue(self) -> Challenge:
        timestamp = int(self._clock())
        return Challenge(token=self._sign(timestamp), timestamp=timestamp)

    def verify(self, token: Any, timestamp: int) -> CheckResult:
        now = int(self._clock())
        if now - timestamp >= self.validity_ms:
            return CheckResult(Outcome.EXPIRED, "Challenge expired")
        if timestamp > now + self.skew_ms:
            return CheckResult(Outcome.FUTURE_TIMESTAMP, "Invalid timestamp")
        if not isinstance(token, str):
            return CheckResult(Outcome.TAMPERED, "Invalid challenge token")
        expected = self._sign(timestamp)
        # compare bytes: compare_digest rejects non-ASCII str arguments
        if not hmac.compare_digest(expected.encode("ascii"), token.encode("utf-8", "replace")):
            return CheckResult(Outcome.TAMPERED, "Invalid challenge token")
        return PASSED


def check_honeypot(fields: Mapping[str, Any]) -> CheckResult:
    for name in HONEYPOT_FIELDS:
        value = fields.get(name)
        if value is not None and str(value).strip() != "":
            return CheckResult(Outcome.BOT_DETECTED, "Bot detected")
    return PASSED


def validate_log_content(content: bytes) -> CheckResult:
    """Accept plain text; reject binary, empty and executable/script payloads.

    Only the first 1000 characters are scanned for signatures so the cost
    does not grow with the file.
    """
    text = content.decode("utf-8", errors="replace")
    if "\0" in text:
        return CheckResult(Outcome.BINARY_CONTENT, "Binary content not allowed")
    if not text.strip():
        return CheckResult(Outcome.EMPTY, "Empty file")

    first_chunk = text[:_SCAN_PREFIX_CHARS]
    for pattern in _DISALLOWED_SIGNATURES:
        if pattern.search(first_chunk):
            return CheckResult(Outcome.DISALLOWED_CONTENT, "File content not allowed")
    return PASSED


def check_submission_timing(issued_at: int, now: int, min_ms: int = MIN_SUBMIT_MS) -> CheckResult:
    """Soft signal only: callers log it and carry on."""
    if now - issued_at < min_ms:
        return CheckResult(Outcome.SUSPICIOUS_TIMING, "Submission too fast")
    return PASSED


def file_extension(filename: str) -> str:
    name = (filename or "").lower()
    if "." not in name:
        return ""
    return "." + name.rsplit(".", 1)[1]


def validate_file_extension(filename: str, allowed: Sequence[str]) -> CheckResult:
    ext = file_extension(filename)
    if not ext or ext not in allowed:
        return CheckResult(Outcome.DISALLOWED_EXTENSION, f"Only {', '.join(allowed)} files allowed")
    return PASSED


def check_magic_bytes(content: bytes, extension: str) -> CheckResult:
    signatures = MAGIC_BYTES.get(extension.lower())
    if signatures is None:
        return PASSED
    if not any(content.startswith(sig) for sig in signatures):
        return CheckResult(Outcome.SIGNATURE_MISMATCH, "File content does not match its extension")
    if extension.lower() == ".webp" and content[8:12] != b"WEBP":
        return CheckResult(Outcome.SIGNATURE_MISMATCH, "File content does not match its extension")
    return PASSED
