"""LoggingManager - configures the root logger for reportflow."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import List, Optional

from .config import LoggingConfig, load_config
from .formatters import ColoredFormatter, StandardFormatter, StructuredFormatter
from .utils import ensure_log_directory, get_log_level


class LoggingManager:
    """
    Builds handlers from a LoggingConfig and installs them on the root logger.

    Console output uses the configured formatter; file output is always
    structured JSON with size-based rotation.
    """

    def __init__(self, config: LoggingConfig):
        self.config = config
        self._handlers: List[logging.Handler] = []

        self._setup_handlers()
        self._setup_root_logger()

    @property
    def handlers(self) -> List[logging.Handler]:
        return list(self._handlers)

    def _setup_handlers(self) -> None:
        if self.config.console.enabled:
            self._handlers.append(self._create_console_handler())

        if self.config.file.enabled:
            file_handler = self._create_file_handler()
            if file_handler:
                self._handlers.append(file_handler)

    def _create_console_handler(self) -> logging.Handler:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(get_log_level(self.config.console.level))

        if self.config.console.format == "json":
            formatter = StructuredFormatter()
        elif self.config.console.format == "colored":
            formatter = ColoredFormatter()
        else:
            formatter = StandardFormatter()

        handler.setFormatter(formatter)
        return handler

    def _create_file_handler(self) -> Optional[logging.Handler]:
        try:
            path = ensure_log_directory(self.config.file.path)
            handler = RotatingFileHandler(
                filename=str(path),
                maxBytes=self.config.file.max_bytes,
                backupCount=self.config.file.backup_count,
                encoding="utf-8",
            )
        except OSError as e:
            sys.stderr.write(f"Failed to create file handler for {self.config.file.path}: {e}\n")
            return None

        handler.setLevel(get_log_level(self.config.file.level))
        handler.setFormatter(StructuredFormatter())
        return handler

    def _setup_root_logger(self) -> None:
        root_logger = logging.getLogger()
        root_logger.setLevel(get_log_level(self.config.global_level))

        root_logger.handlers.clear()
        for handler in self._handlers:
            root_logger.addHandler(handler)

    def get_logger(self, name: str) -> logging.Logger:
        return logging.getLogger(name)

    def shutdown(self) -> None:
        """Flush, close and detach every handler this manager installed."""
        root_logger = logging.getLogger()
        for handler in self._handlers:
            handler.flush()
            handler.close()
            root_logger.removeHandler(handler)
        self._handlers.clear()


# Global manager instance
_manager: Optional[LoggingManager] = None


def initialize(config: Optional[LoggingConfig] = None, config_path: Optional[str] = None) -> LoggingManager:
    """Initialize (or re-initialize) the global logging manager."""
    global _manager

    if config is None:
        config = load_config(config_path)

    if _manager is not None:
        _manager.shutdown()
    _manager = LoggingManager(config)
    return _manager


def get_manager() -> Optional[LoggingManager]:
    return _manager


def get_logger(name: str) -> logging.Logger:
    if _manager:
        return _manager.get_logger(name)
    return logging.getLogger(name)
