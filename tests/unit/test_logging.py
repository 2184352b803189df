"""Unit tests for the logging configuration module."""

import logging
import sys
from unittest.mock import MagicMock, patch

import pytest
import structlog

from mailwatch.logging import get_logger, setup_logging


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset root logger and structlog state around each test."""
    original_handlers = logging.root.handlers[:]
    original_level = logging.root.level
    logging.root.handlers.clear()
    yield
    logging.root.handlers.clear()
    logging.root.handlers.extend(original_handlers)
    logging.root.setLevel(original_level)
    structlog.reset_defaults()


def _mock_settings(level: str = "INFO", development: bool = False) -> MagicMock:
    settings = MagicMock()
    settings.log_level = level
    settings.is_development = development
    return settings


class TestSetupLogging:
    """Tests for setup_logging function."""

    @pytest.mark.parametrize(
        ("level", "expected"),
        [("DEBUG", logging.DEBUG), ("warning", logging.WARNING), ("bogus", logging.INFO)],
    )
    def test_basic_config_level(self, level, expected):
        """Test that basicConfig receives the parsed level, INFO when unknown."""
        with patch("mailwatch.logging.get_settings", return_value=_mock_settings(level)):
            with patch("mailwatch.logging.logging.basicConfig") as mock_basic:
                setup_logging()

        mock_basic.assert_called_once_with(format="%(message)s", stream=sys.stdout, level=expected)

    def test_third_party_loggers_quieted(self):
        """Test that HTTP and driver loggers are raised to WARNING."""
        with patch("mailwatch.logging.get_settings", return_value=_mock_settings("DEBUG")):
            setup_logging()

        for name in ("httpx", "httpcore", "openai", "asyncpg"):
            assert logging.getLogger(name).level == logging.WARNING

    def test_json_renderer_in_production(self):
        """Test that production output is rendered as JSON."""
        with patch("mailwatch.logging.get_settings", return_value=_mock_settings()):
            setup_logging()

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_console_renderer_in_development(self):
        """Test that development output uses the console renderer."""
        with patch(
            "mailwatch.logging.get_settings", return_value=_mock_settings(development=True)
        ):
            setup_logging()

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


class TestGetLogger:
    """Tests for get_logger function."""

    def test_returns_usable_logger(self):
        log = get_logger("mailwatch.test")
        assert hasattr(log, "info")
        assert hasattr(log, "bind")

    def test_explicit_settings_skip_lookup(self):
        """Test that passed settings are used instead of get_settings()."""
        with patch("mailwatch.logging.get_settings") as mock_get:
            setup_logging(_mock_settings(development=True))

        mock_get.assert_not_called()
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
