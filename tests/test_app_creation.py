"""
Tests for logshare/app.py.
Tests Flask app creation, configuration mapping, service wiring and logging.
"""
import logging
from unittest import mock

import pytest

from logshare.app import create_app
from logshare.core import LogshareServices


@pytest.fixture
def base_config(storage_config):
    return {"TESTING": True, **storage_config}


class TestAppCreation:
    """Test Flask app creation and initialization."""

    def test_create_app_with_config(self, base_config):
        """Test creating app with custom configuration."""
        app = create_app(config={**base_config, "DEBUG": True, "SECRET_KEY": "test-secret-key"})
        assert app.config["TESTING"] is True
        assert app.config["DEBUG"] is True
        assert app.config["SECRET_KEY"] == "test-secret-key"

    def test_services_registered(self, base_config):
        """The service container is reachable through app.extensions."""
        app = create_app(config=base_config)
        assert isinstance(app.extensions["logshare"], LogshareServices)
        assert "logshare" in app.blueprints

    def test_settings_defaults_mapped(self, base_config):
        app = create_app(config=base_config)
        assert app.config["MAX_FILE_SIZE"] == 5 * 1024 * 1024
        assert app.config["CHALLENGE_VALIDITY_MS"] == 300_000
        assert app.config["CLOCK_SKEW_MS"] == 60_000
        assert app.config["MIN_SUBMIT_MS"] == 2000
        assert app.config["MAX_CONTENT_LENGTH"] == 6 * 1024 * 1024

    def test_explicit_content_length_kept(self, base_config):
        app = create_app(config={**base_config, "MAX_CONTENT_LENGTH": 1024})
        assert app.config["MAX_CONTENT_LENGTH"] == 1024

    def test_missing_secrets_are_generated(self, base_config):
        """Test that absent secrets get a per-process random value."""
        config = {**base_config, "ANTIBOT_SECRET": None, "AUTH_SECRET": None}
        app = create_app(config=config)
        assert len(app.config["ANTIBOT_SECRET"]) == 64
        assert len(app.config["AUTH_SECRET"]) == 64
        assert app.config["ANTIBOT_SECRET"] != app.config["AUTH_SECRET"]

    def test_storage_roots_created(self, base_config, tmp_path):
        create_app(config=base_config)
        assert (tmp_path / "logs").is_dir()
        assert (tmp_path / "files").is_dir()

    def test_environment_settings(self, base_config, monkeypatch):
        """Environment variables flow through Settings into app.config."""
        monkeypatch.setenv("PREVIEW_LINES", "25")
        monkeypatch.setenv("CHALLENGE_VALIDITY_SECONDS", "120")
        app = create_app(config=base_config)
        assert app.config["PREVIEW_LINES"] == 25
        assert app.config["CHALLENGE_VALIDITY_MS"] == 120_000
        assert app.extensions["logshare"].ingestor.preview_lines == 25


class TestAppLogging:
    """Test app logging configuration."""

    def test_logger_level_setting(self, base_config):
        """Test that logger level is set to INFO."""
        app = create_app(config=base_config)
        assert app.logger.level == logging.INFO

    def test_logger_handler_formatter_content(self, base_config):
        """Test the content of the logger formatter."""
        app = create_app(config=base_config)
        assert app.logger.handlers
        formatter = app.logger.handlers[0].formatter
        record = logging.LogRecord(
            name="test",
            level=logging.INFO,
            pathname="",
            lineno=0,
            msg="Test message",
            args=(),
            exc_info=None,
        )
        assert "Test message" in formatter.format(record)


class TestSecretsLoaderHook:
    """Test secrets loader behavior during app creation."""

    def test_secrets_loader_called(self, base_config):
        with mock.patch("logshare.app.load_logshare_secrets", return_value=[]) as loader:
            create_app(config=base_config)
        loader.assert_called_once_with()

    def test_secrets_loader_exception_handling(self, base_config):
        """A failing secrets loader never prevents app creation."""
        with mock.patch("logshare.app.load_logshare_secrets", side_effect=Exception("General error")):
            app = create_app(config=base_config)
        assert app is not None


class TestLimiterLifecycle:
    def test_sweeper_not_started_in_testing(self, base_config):
        app = create_app(config=base_config)
        assert app.extensions["logshare"].limiter._thread is None

    def test_sweeper_started_outside_testing(self, base_config):
        app = create_app(config={**base_config, "TESTING": False})
        limiter = app.extensions["logshare"].limiter
        try:
            assert limiter._thread is not None
            assert limiter._thread.daemon
        finally:
            limiter.stop()
