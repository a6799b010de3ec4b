"""
Tests for logshare/ingestion.py.

Drives UploadIngestor and AuthenticatedUploader directly against temporary
storage with a fake clock: stage ordering, the honeypot decoy, persist and
index failure handling, and the payload shapes.
"""

import itertools
import json
import statistics
import time

import pytest

from logshare.anti_bot import ChallengeService
from logshare.errors import InternalFailure, ValidationFailed
from logshare.file_adapter import LocalArtifactStorage
from logshare.ingestion import (
    AuthenticatedUploader,
    PipelineStage,
    StageRejected,
    UploadIngestor,
    UploadSubmission,
    extract_preview,
    validate_tag,
)
from logshare.metadata_store import MetadataStore

LOG_BYTES = b"2023-10-10 INFO boot\n2023-10-10 ERROR disk full\n"
FIXED_ID = "0123456789abcdef"


class FailingStore(MetadataStore):
    def append(self, record):
        raise OSError("disk full")


@pytest.fixture
def challenges(clock):
    return ChallengeService("ingest-secret", clock=clock)


@pytest.fixture
def storage(tmp_path):
    return LocalArtifactStorage(tmp_path / "logs")


@pytest.fixture
def index(tmp_path):
    return MetadataStore(tmp_path / "logs-metadata.json")


@pytest.fixture
def ingestor(challenges, storage, index, clock):
    return UploadIngestor(challenges, storage, index, clock=clock, id_factory=lambda: FIXED_ID)


@pytest.fixture
def submission(challenges, clock):
    def _make(**overrides):
        ch = challenges.issue()
        clock.advance(3000)
        fields = {"_token": ch.token, "_timestamp": str(ch.timestamp), "website": ""}
        fields.update(overrides.pop("fields", {}))
        kwargs = {
            "original_name": "app.log",
            "data": LOG_BYTES,
            "technology": "nginx",
            "log_type": "error",
            "fields": fields,
        }
        kwargs.update(overrides)
        return UploadSubmission(**kwargs)

    return _make


def stored_files(storage):
    return sorted(p.name for p in storage.root.iterdir())


class TestHelpers:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("nginx", None),
            ("node_js-v2", None),
            ("", "Technology is required"),
            (None, "Technology is required"),
            ("x" * 101, "Technology name too long"),
            ("ngi nx", "Technology contains invalid characters"),
            ("<script>", "Technology contains invalid characters"),
        ],
    )
    def test_validate_tag(self, value, expected):
        assert validate_tag(value, "Technology") == expected

    def test_preview_counts_all_lines(self):
        data = "\n".join(f"line {i}" for i in range(25)).encode()
        preview, count = extract_preview(data, 10)
        assert preview.splitlines() == [f"line {i}" for i in range(10)]
        assert count == 25


class TestHappyPath:
    def test_persists_then_indexes(self, ingestor, submission, storage, index, clock):
        result = ingestor.ingest(submission())
        assert result.stage is PipelineStage.RESPOND
        assert not result.decoy
        name = result.record.filename
        assert name == f"{clock.now}-{FIXED_ID}-app.log"
        assert (storage.root / name).read_bytes() == LOG_BYTES
        assert index.get(FIXED_ID) == result.record
        assert result.record.line_count == 3
        assert result.record.uploaded_at.endswith("Z")

    def test_payload_shape(self, ingestor, submission):
        payload = ingestor.ingest(submission()).payload
        assert set(payload) == {"success", "url", "id", "filename", "technology", "logType", "size"}
        assert payload["success"] is True
        assert payload["url"].startswith("/api/logs-upload/")
        assert payload["filename"] == "app.log"
        assert payload["size"] == len(LOG_BYTES)

    def test_fast_submission_still_accepted(self, ingestor, challenges, clock):
        ch = challenges.issue()
        clock.advance(100)
        sub = UploadSubmission(
            "fast.log", LOG_BYTES, "nginx", "access", {"_token": ch.token, "_timestamp": str(ch.timestamp)}
        )
        assert ingestor.ingest(sub).payload["success"] is True


class TestRejections:
    def test_no_file(self, ingestor, submission):
        with pytest.raises(StageRejected) as exc:
            ingestor.ingest(submission(original_name=""))
        assert exc.value.stage is PipelineStage.RECEIVED
        assert exc.value.message == "No file provided"

    def test_missing_challenge(self, ingestor, submission):
        with pytest.raises(StageRejected) as exc:
            ingestor.ingest(submission(fields={"_token": ""}))
        assert exc.value.stage is PipelineStage.CHALLENGE_VERIFY
        assert exc.value.message == "Security verification required"

    def test_non_numeric_timestamp(self, ingestor, submission):
        with pytest.raises(StageRejected) as exc:
            ingestor.ingest(submission(fields={"_timestamp": "soon"}))
        assert exc.value.message == "Security verification failed"

    def test_expired_challenge(self, ingestor, submission, clock):
        sub = submission()
        clock.advance(300_000)
        with pytest.raises(StageRejected) as exc:
            ingestor.ingest(sub)
        assert exc.value.message == "Challenge expired"

    def test_challenge_checked_before_tags(self, ingestor, submission):
        with pytest.raises(StageRejected) as exc:
            ingestor.ingest(submission(technology="", fields={"_token": "f" * 32}))
        assert exc.value.stage is PipelineStage.CHALLENGE_VERIFY
        assert exc.value.message == "Invalid challenge token"

    def test_tags_checked_before_size(self, ingestor, submission):
        with pytest.raises(StageRejected) as exc:
            ingestor.ingest(submission(log_type="bad type", data=b"x" * (6 * 1024 * 1024)))
        assert exc.value.stage is PipelineStage.METADATA_VALIDATE
        assert exc.value.message == "Log type contains invalid characters"

    def test_oversized(self, ingestor, submission):
        with pytest.raises(StageRejected) as exc:
            ingestor.ingest(submission(data=b"a" * (5 * 1024 * 1024 + 1)))
        assert exc.value.stage is PipelineStage.SIZE_CHECK
        assert exc.value.message == "File too large. Maximum size is 5MB"

    def test_exactly_max_size_accepted(self, ingestor, submission):
        data = b"a" * (5 * 1024 * 1024)
        assert ingestor.ingest(submission(data=data)).payload["size"] == len(data)

    def test_extension(self, ingestor, submission):
        with pytest.raises(StageRejected) as exc:
            ingestor.ingest(submission(original_name="app.exe"))
        assert exc.value.stage is PipelineStage.EXTENSION_CHECK
        assert exc.value.message == "Only log files allowed (.log, .txt)"

    def test_content(self, ingestor, submission, storage, index):
        with pytest.raises(StageRejected) as exc:
            ingestor.ingest(submission(data=b"<?php system($_GET['c']); ?>"))
        assert exc.value.stage is PipelineStage.CONTENT_VALIDATE
        assert exc.value.message == "File content not allowed"
        assert stored_files(storage) == []
        assert index.records() == []

    def test_rejections_are_validation_failures(self):
        assert issubclass(StageRejected, ValidationFailed)


class TestHoneypotDecoy:
    def test_decoy_matches_success_shape(self, ingestor, submission, storage, index):
        real = ingestor.ingest(submission()).payload
        decoy_result = ingestor.ingest(submission(fields={"website": "http://spam.example"}))
        assert decoy_result.decoy is True
        assert decoy_result.stage is PipelineStage.HONEYPOT_CHECK
        assert set(decoy_result.payload) == set(real)
        assert decoy_result.payload["success"] is True
        assert len(stored_files(storage)) == 1
        assert len(index.records()) == 1

    def test_decoy_skips_all_other_checks(self, ingestor, submission, storage):
        sub = submission(
            original_name="evil.exe",
            data=b"MZ binary",
            technology="",
            fields={"phone": "555-0100", "_token": ""},
        )
        assert ingestor.ingest(sub).decoy is True
        assert stored_files(storage) == []

    def test_decoy_leaves_no_trace(self, ingestor, submission, storage, index, tmp_path):
        ingestor.ingest(submission())
        before = index.path.read_bytes()
        ingestor.ingest(submission(fields={"website": "http://spam.example"}))
        assert index.path.read_bytes() == before
        assert len(stored_files(storage)) == 1
        assert sorted(p.name for p in tmp_path.iterdir()) == ["logs", "logs-metadata.json"]

    def test_decoy_rehearsal_failure_still_answers(self, ingestor, submission, storage, monkeypatch):
        def boom(_data):
            raise OSError("read-only filesystem")

        monkeypatch.setattr(storage, "scratch_write", boom)
        result = ingestor.ingest(submission(fields={"website": "http://spam.example"}))
        assert result.decoy is True
        assert result.payload["success"] is True

    @pytest.mark.slow
    def test_decoy_latency_tracks_real_upload(self, challenges, storage, index, clock, submission):
        seed = [
            {
                "id": f"{i:016x}",
                "filename": f"{1700000000000 + i}-{i:016x}-seed{i}.log",
                "originalName": f"seed{i}.log",
                "technology": "nginx",
                "logType": "access",
                "uploadedAt": "2024-01-01T00:00:00.000Z",
                "size": 100,
                "preview": "x" * 400,
                "lineCount": 10,
            }
            for i in range(2000)
        ]
        index.path.write_text(json.dumps({"uploads": seed}))
        ids = itertools.count(1 << 40)
        ingestor = UploadIngestor(challenges, storage, index, clock=clock, id_factory=lambda: f"{next(ids):016x}")

        def timed_ingest(sub):
            started = time.perf_counter()
            ingestor.ingest(sub)
            return time.perf_counter() - started

        real, decoy = [], []
        for _ in range(7):
            real.append(timed_ingest(submission()))
            decoy.append(timed_ingest(submission(fields={"website": "http://spam.example"})))

        ratio = statistics.median(decoy) / statistics.median(real)
        assert 0.25 < ratio < 4, f"decoy/real latency ratio {ratio:.2f}"
        assert len(index.records()) == 2000 + 7


class TestFailures:
    def test_persist_failure_is_internal(self, ingestor, submission, storage, monkeypatch):
        def boom(*_args, **_kwargs):
            raise OSError("read-only filesystem")

        monkeypatch.setattr(storage, "write", boom)
        with pytest.raises(InternalFailure) as exc:
            ingestor.ingest(submission())
        assert exc.value.message == "Failed to upload file"

    def test_index_failure_leaves_orphan_not_dangling_entry(self, challenges, storage, clock, tmp_path, submission):
        failing = FailingStore(tmp_path / "broken.json")
        ingestor = UploadIngestor(challenges, storage, failing, clock=clock, id_factory=lambda: FIXED_ID)
        with pytest.raises(InternalFailure):
            ingestor.ingest(submission())
        assert len(stored_files(storage)) == 1
        assert failing.records() == []


class TestAuthenticatedUploader:
    @pytest.fixture
    def uploader(self, tmp_path, clock):
        return AuthenticatedUploader(LocalArtifactStorage(tmp_path / "files"), clock=clock, id_factory=lambda: FIXED_ID)

    def test_png_upload(self, uploader, clock):
        data = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
        payload = uploader.upload("photo.png", data, "alice")
        assert payload == {
            "success": True,
            "url": f"/uploads/{clock.now}-{FIXED_ID}-photo.png",
            "filename": "photo.png",
            "isImage": True,
            "size": len(data),
        }

    def test_text_upload_is_not_image(self, uploader):
        assert uploader.upload("data.csv", b"a,b\n1,2\n", "alice")["isImage"] is False

    def test_spoofed_image_rejected(self, uploader):
        with pytest.raises(ValidationFailed):
            uploader.upload("photo.png", b"GIF89a not a png", "alice")

    def test_disallowed_type(self, uploader):
        with pytest.raises(ValidationFailed) as exc:
            uploader.upload("run.sh", b"echo hi", "alice")
        assert exc.value.message.startswith("File type not allowed")

    def test_text_content_scanned(self, uploader):
        with pytest.raises(ValidationFailed) as exc:
            uploader.upload("notes.txt", b"#!/bin/sh\nrm -rf /", "alice")
        assert exc.value.message == "File content not allowed"
