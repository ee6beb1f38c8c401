"""Unit tests for the Metronome logger factory."""

import logging
import logging.handlers
from unittest.mock import patch

import pytest
import structlog

from metronome.config.models import LoggingConfig
from metronome.core.exceptions import ValidationError
from metronome.logging import get_factory, get_logger, get_performance_logger
from metronome.logging.factory import LoggerConfig, LoggerFactory, redact_secrets


@pytest.fixture
def restore_root_logger():
    """Restore root logger handlers and level changed by configuration."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestLoggerConfig:
    """Test LoggerConfig defaults."""

    def test_defaults(self):
        """Test default logger configuration values."""
        config = LoggerConfig()

        assert config.level == "INFO"
        assert config.format == "json"
        assert config.console_output is True
        assert config.file_path is None
        assert config.static_context == {}


class TestLoggerFactory:
    """Test logger creation and configuration."""

    def test_get_logger_caching(self):
        """Test loggers are cached by name and level."""
        factory = LoggerFactory()

        assert factory.get_logger("metronome.a") is factory.get_logger("metronome.a")
        assert factory.get_logger("metronome.a") is not factory.get_logger("metronome.b")

    def test_performance_logger_caching(self):
        """Test performance loggers are cached and share a structured logger."""
        factory = LoggerFactory()
        perf_logger = factory.get_performance_logger("metronome.cycle")

        assert factory.get_performance_logger("metronome.cycle") is perf_logger
        assert perf_logger.logger is factory.get_logger("perf.metronome.cycle")

    def test_invalid_level_raises(self):
        """Test configuring an unknown level raises ValidationError."""
        factory = LoggerFactory()

        with pytest.raises(ValidationError):
            factory.configure_from_dict({"level": "LOUD"})

        assert not factory.initialized

    def test_configure_from_config_json(self, restore_root_logger):
        """Test LoggingConfig selects the JSON renderer."""
        factory = LoggerFactory()

        with patch("metronome.logging.factory.structlog.configure") as configure:
            factory.configure_from_config(LoggingConfig(level="debug", format="json", console_output=False))

        processors = configure.call_args.kwargs["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert factory.initialized
        assert factory.config.level == "DEBUG"
        assert logging.getLogger().level == logging.DEBUG

    def test_configure_text_format(self, restore_root_logger):
        """Test the text format selects the console renderer."""
        factory = LoggerFactory()

        with patch("metronome.logging.factory.structlog.configure") as configure:
            factory.configure_from_dict({"format": "text", "console_output": False, "unknown": 1})

        processors = configure.call_args.kwargs["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    def test_file_output_creates_directory(self, tmp_path, restore_root_logger):
        """Test a rotating file handler is added and its directory created."""
        log_file = tmp_path / "logs" / "metronome.log"
        factory = LoggerFactory()

        with patch("metronome.logging.factory.structlog.configure"):
            factory.configure_from_dict({"file_path": str(log_file), "console_output": False})

        assert log_file.parent.is_dir()
        assert any(
            isinstance(handler, logging.handlers.RotatingFileHandler)
            for handler in logging.getLogger().handlers
        )


class TestGlobalFunctions:
    """Test module level helpers."""

    def test_global_helpers_use_global_factory(self):
        """Test get_logger and get_performance_logger share the global factory."""
        logger = get_logger("metronome.global")
        perf_logger = get_performance_logger("metronome.global")

        assert get_factory().get_logger("metronome.global") is logger
        assert perf_logger.name == "metronome.global"


class TestRedactSecrets:
    """Test the secret-masking processor."""

    def test_masks_secret_keys(self):
        """Test secret-named fields are replaced."""
        event = redact_secrets(None, "info", {"event": "Connecting", "password": "hunter2", "api_key": "k"})

        assert event == {"event": "Connecting", "password": "***", "api_key": "***"}

    def test_masks_inline_passwords(self):
        """Test connection strings and statements lose their password values."""
        event = redact_secrets(
            None,
            "info",
            {
                "event": "Connecting",
                "connection": "SERVER=sql01;UID=monitor;PWD=hunter2;Encrypt=yes",
                "operation": "CREATE LOGIN app WITH password = 'S3cret!'",
            },
        )

        assert event["connection"] == "SERVER=sql01;UID=monitor;PWD=***;Encrypt=yes"
        assert event["operation"] == "CREATE LOGIN app WITH password = ***"

    def test_leaves_other_fields(self):
        """Test unrelated fields are untouched."""
        event = redact_secrets(None, "info", {"event": "Cycle completed", "filter": "a=b", "issue_count": 3})

        assert event == {"event": "Cycle completed", "filter": "a=b", "issue_count": 3}


class TestStaticContext:
    """Test static context configured through the factory."""

    def test_static_context_processor(self, restore_root_logger):
        """Test static fields are added without overriding event fields."""
        factory = LoggerFactory()

        with patch("metronome.logging.factory.structlog.configure") as configure:
            factory.configure_from_dict({"console_output": False, "static_context": {"target": "prod_sql_01"}})

        processors = configure.call_args.kwargs["processors"]
        add_static = processors[3]
        assert add_static(None, "info", {"event": "x"}) == {"event": "x", "target": "prod_sql_01"}
        assert add_static(None, "info", {"event": "x", "target": "other"})["target"] == "other"
        assert redact_secrets in processors
