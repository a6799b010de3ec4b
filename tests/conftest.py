"""
Shared pytest fixtures for logshare.

Provides a controllable clock, a Flask app wired to temporary storage
roots, and helpers that walk the challenge/upload flow the way a browser
form does.
"""

import base64
import hashlib
import hmac
import io
import json
import time
from typing import Any, Dict, Optional

import pytest

from logshare.app import create_app


START_MS = 1_700_000_000_000
AUTH_SECRET = "test-auth-secret"


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


# ==================== CLOCK AND STORAGE FIXTURES ====================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage_config(tmp_path) -> Dict[str, Any]:
    return {
        "UPLOAD_DIR": str(tmp_path / "logs"),
        "FILES_DIR": str(tmp_path / "files"),
        "METADATA_FILE": str(tmp_path / "logs-metadata.json"),
    }


# ==================== APP FIXTURES ====================

@pytest.fixture
def app(storage_config, clock):
    config = {
        "TESTING": True,
        "ANTIBOT_SECRET": "test-antibot-secret",
        "AUTH_SECRET": AUTH_SECRET,
        **storage_config,
    }
    return create_app(config, clock=clock)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions["logshare"]


# ==================== FLOW HELPERS ====================

@pytest.fixture
def get_challenge(client):
    def _get_challenge(headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        resp = client.get("/api/challenge?action=upload", headers=headers)
        assert resp.status_code == 200, resp.get_data(as_text=True)
        return resp.get_json()

    return _get_challenge


@pytest.fixture
def upload_log(client, clock, get_challenge):
    """Issue a challenge, wait like a human, and submit the form."""

    def _upload(
        content: bytes = b"127.0.0.1 - - [10/Oct/2023:13:55:36] \"GET / HTTP/1.1\" 200 2326\n",
        name: str = "access.log",
        technology: str = "nginx",
        log_type: str = "access",
        honeypot: Optional[Dict[str, str]] = None,
        wait_ms: int = 3000,
        challenge: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        ch = challenge or get_challenge(headers=headers)
        clock.advance(wait_ms)
        form = {
            "file": (io.BytesIO(content), name),
            "technology": technology,
            "logType": log_type,
            "_token": ch["token"],
            "_timestamp": str(ch["timestamp"]),
            "website": "",
            "url": "",
            "email2": "",
            "phone": "",
        }
        form.update(honeypot or {})
        return client.post(
            "/api/logs-upload", data=form, content_type="multipart/form-data", headers=headers
        )

    return _upload


# ==================== AUTH HELPERS ====================

@pytest.fixture
def mint_token():
    """Sign bearer tokens the way the site's auth layer does."""

    def _mint(username: str, secret: str = AUTH_SECRET) -> str:
        payload = json.dumps({"u": username, "ts": int(time.time())})
        sig = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()
        encoded = base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii").rstrip("=")
        return f"{encoded}.{sig}"

    return _mint


# ==================== PYTEST MARKERS ====================

def pytest_configure(config):
    config.addinivalue_line("markers", "integration: tests that drive the Flask app end to end")
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
