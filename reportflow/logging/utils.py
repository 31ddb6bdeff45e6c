"""Helpers shared by the logging configuration and manager."""

import logging
from pathlib import Path
from typing import Optional


def ensure_log_directory(log_path: str) -> Path:
    """Create the parent directory of a log file if needed."""
    log_file = Path(log_path)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    return log_file


def get_log_level(level_str: str) -> int:
    """Convert a level name to a logging constant (INFO if unknown)."""
    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return level_map.get(level_str.upper(), logging.INFO)


def parse_env_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def parse_env_int(value: Optional[str], default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default
