"""Configuration models for reportflow logging."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from .utils import parse_env_bool, parse_env_int


class OutputConfig(BaseModel):
    """Configuration for console output."""

    enabled: bool = Field(default=True, description="Enable console output")
    level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    format: str = Field(default="standard", description="Format: standard, json, colored")


class FileConfig(BaseModel):
    """Configuration for file output."""

    enabled: bool = Field(default=False, description="Enable file output")
    path: str = Field(default="logs/reportflow.log", description="Path to log file")
    level: str = Field(default="DEBUG", description="Log level")
    max_bytes: int = Field(default=50_000_000, description="Max bytes per file (50MB)")
    backup_count: int = Field(default=5, description="Number of backup files to keep")


# Environment variable -> (section, field, parser)
ENV_OVERRIDES = {
    "REPORTFLOW_LOG_CONSOLE_ENABLED": ("console", "enabled", parse_env_bool),
    "REPORTFLOW_LOG_CONSOLE_LEVEL": ("console", "level", str),
    "REPORTFLOW_LOG_CONSOLE_FORMAT": ("console", "format", str),
    "REPORTFLOW_LOG_FILE_ENABLED": ("file", "enabled", parse_env_bool),
    "REPORTFLOW_LOG_FILE_PATH": ("file", "path", str),
    "REPORTFLOW_LOG_FILE_LEVEL": ("file", "level", str),
    "REPORTFLOW_LOG_FILE_MAX_BYTES": ("file", "max_bytes", parse_env_int),
    "REPORTFLOW_LOG_FILE_BACKUP_COUNT": ("file", "backup_count", parse_env_int),
}


class LoggingConfig(BaseModel):
    """Complete logging configuration."""

    console: OutputConfig = Field(default_factory=OutputConfig)
    file: FileConfig = Field(default_factory=FileConfig)
    global_level: str = Field(default="INFO", description="Global log level")

    @classmethod
    def from_dict(cls, data: dict) -> "LoggingConfig":
        """Create config from dictionary."""
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: str) -> "LoggingConfig":
        """Load the reportflow.logging section of a YAML file."""
        config_path = Path(path)
        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            yaml_data = yaml.safe_load(f) or {}

        logging_data = (yaml_data.get("reportflow") or {}).get("logging") or {}
        return cls.from_dict(logging_data)

    def apply_env(self) -> "LoggingConfig":
        """Override fields from REPORTFLOW_LOG_* environment variables."""
        level = os.environ.get("REPORTFLOW_LOG_LEVEL")
        if level:
            self.global_level = level
            # A single level variable also drives the console
            if not os.environ.get("REPORTFLOW_LOG_CONSOLE_LEVEL"):
                self.console.level = level

        for name, (section, field, parse) in ENV_OVERRIDES.items():
            value = os.environ.get(name)
            if value is None or value == "":
                continue
            setattr(getattr(self, section), field, parse(value))
        return self

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        """Load config from environment variables over the defaults."""
        return cls().apply_env()

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "LoggingConfig":
        """Load configuration (priority: env vars > YAML > defaults)."""
        config = cls()
        if config_path:
            try:
                config = cls.from_yaml(config_path)
            except (OSError, yaml.YAMLError):
                config = cls()
        return config.apply_env()


def load_config(config_path: Optional[str] = None) -> LoggingConfig:
    return LoggingConfig.load(config_path)
