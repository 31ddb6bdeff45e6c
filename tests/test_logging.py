"""
Tests for the logging package.

Run with:
    pytest tests/test_logging.py -v
"""

import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler

import pytest
import yaml

from reportflow.logging import (
    ColoredFormatter,
    LoggingConfig,
    LoggingManager,
    StandardFormatter,
    StructuredFormatter,
    get_manager,
    initialize,
)
from reportflow.logging.formatters import strip_ansi_codes
from reportflow.logging.utils import get_log_level, parse_env_bool, parse_env_int


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("REPORTFLOW_LOG"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    manager = get_manager()
    if manager:
        manager.shutdown()
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(msg="Report executed", level=logging.INFO, **extra):
    record = logging.LogRecord("reportflow.engine", level, __file__, 42, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# =============================================================================
# Configuration
# =============================================================================

class TestLoggingConfig:
    """Test config loading from defaults, YAML and environment."""

    def test_defaults(self):
        config = LoggingConfig()

        assert config.console.enabled is True
        assert config.console.format == "standard"
        assert config.file.enabled is False
        assert config.global_level == "INFO"

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "reportflow.yaml"
        path.write_text(yaml.safe_dump({
            "reportflow": {
                "logging": {
                    "global_level": "DEBUG",
                    "console": {"format": "json"},
                    "file": {"enabled": True, "backup_count": 2},
                },
            },
        }))

        config = LoggingConfig.from_yaml(str(path))

        assert config.global_level == "DEBUG"
        assert config.console.format == "json"
        assert config.file.enabled is True
        assert config.file.backup_count == 2

    def test_missing_yaml(self, tmp_path):
        assert LoggingConfig.from_yaml(str(tmp_path / "absent.yaml")) == LoggingConfig()

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("REPORTFLOW_LOG_LEVEL", "WARNING")
        monkeypatch.setenv("REPORTFLOW_LOG_FILE_ENABLED", "yes")
        monkeypatch.setenv("REPORTFLOW_LOG_FILE_MAX_BYTES", "1024")

        config = LoggingConfig.from_env()

        assert config.global_level == "WARNING"
        assert config.console.level == "WARNING"
        assert config.file.enabled is True
        assert config.file.max_bytes == 1024

    def test_console_level_wins_over_global(self, monkeypatch):
        monkeypatch.setenv("REPORTFLOW_LOG_LEVEL", "WARNING")
        monkeypatch.setenv("REPORTFLOW_LOG_CONSOLE_LEVEL", "ERROR")

        config = LoggingConfig.from_env()

        assert config.console.level == "ERROR"

    def test_env_beats_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "reportflow.yaml"
        path.write_text(yaml.safe_dump({"reportflow": {"logging": {"console": {"format": "json"}}}}))
        monkeypatch.setenv("REPORTFLOW_LOG_CONSOLE_FORMAT", "colored")

        assert LoggingConfig.load(str(path)).console.format == "colored"


class TestUtils:
    def test_get_log_level(self):
        assert get_log_level("debug") == logging.DEBUG
        assert get_log_level("bogus") == logging.INFO

    def test_parse_env(self):
        assert parse_env_bool("On") is True
        assert parse_env_bool(None, default=True) is True
        assert parse_env_int("12") == 12
        assert parse_env_int("twelve", default=3) == 3


# =============================================================================
# Formatters
# =============================================================================

class TestFormatters:
    """Test record formatting."""

    def test_structured_includes_extras(self):
        record = make_record(execution_id="exec-1")

        data = json.loads(StructuredFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["logger"] == "reportflow.engine"
        assert data["message"] == "Report executed"
        assert data["execution_id"] == "exec-1"
        assert data["timestamp"].endswith("Z")

    def test_structured_exception(self):
        try:
            raise ValueError("bad parameter")
        except ValueError:
            record = make_record(level=logging.ERROR)
            record.exc_info = sys.exc_info()

        data = json.loads(StructuredFormatter().format(record))

        assert data["exception"]["type"] == "ValueError"
        assert data["exception"]["message"] == "bad parameter"

    def test_colored_restores_levelname(self):
        record = make_record(level=logging.WARNING)

        line = ColoredFormatter().format(record)

        assert "\033[33mWARNING\033[0m" in line
        assert record.levelname == "WARNING"
        assert "WARNING" in strip_ansi_codes(line)

    def test_standard(self):
        line = StandardFormatter().format(make_record())

        assert "reportflow.engine - INFO" in line
        assert line.endswith("Report executed")


# =============================================================================
# Manager
# =============================================================================

class TestLoggingManager:
    """Test handler installation on the root logger."""

    def test_console_only(self, restore_root_logger):
        manager = LoggingManager(LoggingConfig())

        assert len(manager.handlers) == 1
        assert isinstance(manager.handlers[0].formatter, StandardFormatter)
        assert logging.getLogger().handlers == manager.handlers
        manager.shutdown()

    def test_file_handler(self, tmp_path, restore_root_logger):
        log_path = tmp_path / "logs" / "reportflow.log"
        config = LoggingConfig.from_dict({
            "console": {"enabled": False},
            "file": {"enabled": True, "path": str(log_path)},
        })

        manager = LoggingManager(config)
        logging.getLogger("reportflow.test").info("written to file")
        manager.shutdown()

        assert manager.handlers == []
        line = json.loads(log_path.read_text().strip().splitlines()[-1])
        assert line["message"] == "written to file"

    def test_file_handler_is_rotating(self, tmp_path, restore_root_logger):
        config = LoggingConfig.from_dict({
            "console": {"enabled": False},
            "file": {"enabled": True, "path": str(tmp_path / "app.log"), "max_bytes": 1000},
        })

        manager = LoggingManager(config)

        assert isinstance(manager.handlers[0], RotatingFileHandler)
        assert manager.handlers[0].maxBytes == 1000
        manager.shutdown()

    def test_initialize_replaces_manager(self, restore_root_logger):
        first = initialize(LoggingConfig())
        second = initialize(LoggingConfig.from_dict({"console": {"format": "json"}}))

        assert get_manager() is second
        assert first.handlers == []
        assert isinstance(second.handlers[0].formatter, StructuredFormatter)
