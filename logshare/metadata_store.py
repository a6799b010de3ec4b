"""
JSON document store for upload metadata.

The index is a single document, ``{"uploads": [...]}``, newest first. Each
load decodes every element on its own: malformed elements are dropped and
reported in a LoadReport instead of failing the whole index. Writes are a
read-modify-write of the full document, serialized per store instance and
replaced atomically on disk. Separate processes writing the same file are
not coordinated; run a single writer process per document.
"""

from __future__ import annotations

import json
import logging
import math
import os
import tempfile
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from logshare.audit_logging import index_audit
from logshare.file_adapter import is_valid_storage_name

logger = logging.getLogger(__name__)

SORT_FIELDS = ("date", "size", "name")
SORT_ORDERS = ("asc", "desc")
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
MAX_FILE_SIZE = 5 * 1024 * 1024
PREVIEW_MAX_CHARS = 4000


@dataclass(frozen=True)
class UploadRecord:
    id: str
    filename: str
    original_name: str
    technology: str
    log_type: str
    uploaded_at: str
    size: int
    preview: str
    line_count: int

    def uploaded_at_ts(self) -> float:
        return _parse_timestamp(self.uploaded_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "originalName": self.original_name,
            "technology": self.technology,
            "logType": self.log_type,
            "uploadedAt": self.uploaded_at,
            "size": self.size,
            "preview": self.preview,
            "lineCount": self.line_count,
        }


@dataclass(frozen=True)
class RecordRejection:
    position: int
    reason: str


@dataclass
class LoadReport:
    records: list[UploadRecord] = field(default_factory=list)
    rejected: list[RecordRejection] = field(default_factory=list)
    document_error: str | None = None

    @property
    def clean(self) -> bool:
        return not self.rejected and self.document_error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "records": len(self.records),
            "rejected": [{"position": r.position, "reason": r.reason} for r in self.rejected],
            "documentError": self.document_error,
        }


def _parse_timestamp(raw: str) -> float:
    return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()


_STR_FIELDS = {
    "id": "id",
    "filename": "filename",
    "originalName": "original_name",
    "technology": "technology",
    "logType": "log_type",
    "uploadedAt": "uploaded_at",
}
_INT_FIELDS = {"size": "size", "lineCount": "line_count"}


def decode_record(raw: Any, max_size: int = MAX_FILE_SIZE) -> UploadRecord | str:
    """Decode one persisted element. Returns the record, or a rejection reason."""
    if not isinstance(raw, Mapping):
        return "not an object"
    kwargs: dict[str, Any] = {}
    for key, attr in _STR_FIELDS.items():
        value = raw.get(key)
        if not isinstance(value, str) or not value:
            return f"missing or invalid '{key}'"
        kwargs[attr] = value
    for key, attr in _INT_FIELDS.items():
        value = raw.get(key)
        # bool is an int subclass; it is never a valid size
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            return f"missing or invalid '{key}'"
        kwargs[attr] = value
    if not is_valid_storage_name(kwargs["filename"]):
        return "'filename' is not a generated storage name"
    if kwargs["size"] > max_size:
        return "'size' exceeds the upload limit"
    preview = raw.get("preview", "")
    if not isinstance(preview, str):
        return "invalid 'preview'"
    if len(preview) > PREVIEW_MAX_CHARS:
        return "'preview' exceeds the preview limit"
    kwargs["preview"] = preview
    try:
        _parse_timestamp(kwargs["uploaded_at"])
    except ValueError:
        return "unparseable 'uploadedAt'"
    return UploadRecord(**kwargs)


@dataclass
class UploadQuery:
    technology: str | None = None
    log_type: str | None = None
    q: str | None = None
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE
    sort_by: str = "date"
    sort_order: str = "desc"


def _safe_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_query(args: Mapping[str, Any]) -> UploadQuery:
    page = _safe_int(args.get("page", 1), 1)
    limit = _safe_int(args.get("limit", DEFAULT_PAGE_SIZE), DEFAULT_PAGE_SIZE)
    sort_by = args.get("sortBy") or "date"
    sort_order = (args.get("sortOrder") or "desc").lower()
    return UploadQuery(
        technology=args.get("technology") or None,
        log_type=args.get("logType") or None,
        q=args.get("q") or None,
        page=page if page > 0 else 1,
        limit=limit if 1 <= limit <= MAX_PAGE_SIZE else DEFAULT_PAGE_SIZE,
        sort_by=sort_by if sort_by in SORT_FIELDS else "date",
        sort_order=sort_order if sort_order in SORT_ORDERS else "desc",
    )


_SORT_KEYS = {
    "date": lambda r: r.uploaded_at_ts(),
    "size": lambda r: r.size,
    "name": lambda r: r.original_name,
}


def run_query(records: list[UploadRecord], query: UploadQuery) -> dict[str, Any]:
    items = records
    if query.technology and query.technology != "all":
        items = [r for r in items if r.technology == query.technology]
    if query.log_type and query.log_type != "all":
        items = [r for r in items if r.log_type == query.log_type]
    if query.q:
        needle = query.q.lower()
        items = [
            r
            for r in items
            if needle in r.original_name.lower()
            or needle in r.preview.lower()
            or needle in r.technology.lower()
            or needle in r.log_type.lower()
        ]

    items = sorted(items, key=_SORT_KEYS[query.sort_by], reverse=query.sort_order == "desc")

    total = len(items)
    offset = (query.page - 1) * query.limit
    return {
        "uploads": [r.to_dict() for r in items[offset : offset + query.limit]],
        "pagination": {
            "page": query.page,
            "limit": query.limit,
            "total": total,
            "totalPages": math.ceil(total / query.limit),
        },
    }


class MetadataStore:
    """Upload index persisted as one JSON document."""

    def __init__(self, path: str | Path, max_size: int = MAX_FILE_SIZE) -> None:
        self.path = Path(path)
        self.max_size = max_size
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()
        self.last_report: LoadReport | None = None

    def load(self) -> LoadReport:
        report = LoadReport()
        self.last_report = report
        if not self.path.exists():
            return report
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            report.document_error = f"unreadable document: {exc.__class__.__name__}"
            logger.warning("Metadata index %s unreadable; using empty index", self.path)
            return report

        uploads = data.get("uploads") if isinstance(data, dict) else None
        if not isinstance(uploads, list):
            report.document_error = "document has no 'uploads' list"
            logger.warning("Metadata index %s has no uploads list; using empty index", self.path)
            return report

        for position, raw in enumerate(uploads):
            decoded = decode_record(raw, self.max_size)
            if isinstance(decoded, UploadRecord):
                report.records.append(decoded)
            else:
                report.rejected.append(RecordRejection(position, decoded))

        if report.rejected:
            logger.warning(
                "Metadata index %s: dropped %d malformed records", self.path, len(report.rejected)
            )
            index_audit("index_repair_report", path=str(self.path), **report.to_dict())
        return report

    def records(self) -> list[UploadRecord]:
        return self.load().records

    def get(self, record_id: str) -> UploadRecord | None:
        for record in self.records():
            if record.id == record_id:
                return record
        return None

    def query(self, query: UploadQuery) -> dict[str, Any]:
        return run_query(self.records(), query)

    def _persist(self, records: list[UploadRecord], commit: bool = True) -> None:
        payload = json.dumps({"uploads": [r.to_dict() for r in records]}, indent=2)
        fd, tmp = tempfile.mkstemp(prefix=".index-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            if commit:
                os.replace(tmp, self.path)
                return
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        os.unlink(tmp)

    def append(self, record: UploadRecord) -> None:
        with self._write_lock:
            records = self.records()
            records.insert(0, record)
            self._persist(records)
        index_audit("index_append", record_id=record.id, stored_as=record.filename, total=len(records))

    def rehearse_append(self, record: UploadRecord) -> None:
        """Do the work of append() without changing the index.

        Same lock, same load, same serialization and a temp-file write of the
        same size that is then discarded.
        """
        with self._write_lock:
            records = self.records()
            records.insert(0, record)
            self._persist(records, commit=False)
