"""
Reportflow logging - console and rotating-file logging setup.

Usage:
    from reportflow.logging import initialize
    initialize(config_path="config/reportflow.yaml")
"""

from .config import FileConfig, LoggingConfig, OutputConfig, load_config
from .formatters import ColoredFormatter, StandardFormatter, StructuredFormatter
from .manager import LoggingManager, get_logger, get_manager, initialize

__all__ = [
    "LoggingManager",
    "LoggingConfig",
    "OutputConfig",
    "FileConfig",
    "ColoredFormatter",
    "StandardFormatter",
    "StructuredFormatter",
    "get_logger",
    "get_manager",
    "initialize",
    "load_config",
]
