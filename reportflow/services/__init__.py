"""
Reportflow - Services

Execution engine, schedule manager, subscription queue and the
collaborators they are built on.
"""

from .config import ConfigService
from .events import EventBus, Event
from .database import DurableStore, MemoryStore, SQLStore, create_store
from .repository import Repository
from .cache import ResultCache, make_key, canonical_parameters
from .datasets import DatasetLoader, MemoryDatasetLoader, SQLDatasetLoader
from .aggregations import Aggregator
from .export import (
    ExportService,
    ExportOptions,
    ExportResult,
    BaseExporter,
)
from .storage import (
    StorageService,
    StorageError,
    InvalidPathError,
    StorageFullError,
)
from .engine import ReportEngine, GenerateOptions, validate_definition
from .cron import CronEvaluator
from .schedule import calculate_next_run, validate_schedule
from .scheduler import ScheduleManager, ScheduleOptions
from .delivery import (
    DeliveryService,
    DeliveryChannel,
    DeliveryPayload,
    EmailChannel,
    EmailConfig,
    WebhookChannel,
    FTPChannel,
    ObjectStorageChannel,
    LogChannel,
)
from .subscriptions import SubscriptionService

__all__ = [
    "ConfigService",
    "EventBus",
    "Event",
    "DurableStore",
    "MemoryStore",
    "SQLStore",
    "create_store",
    "Repository",
    "ResultCache",
    "make_key",
    "canonical_parameters",
    "DatasetLoader",
    "MemoryDatasetLoader",
    "SQLDatasetLoader",
    "Aggregator",
    "ExportService",
    "ExportOptions",
    "ExportResult",
    "BaseExporter",
    "StorageService",
    "StorageError",
    "InvalidPathError",
    "StorageFullError",
    "ReportEngine",
    "GenerateOptions",
    "validate_definition",
    "CronEvaluator",
    "calculate_next_run",
    "validate_schedule",
    "ScheduleManager",
    "ScheduleOptions",
    "DeliveryService",
    "DeliveryChannel",
    "DeliveryPayload",
    "EmailChannel",
    "EmailConfig",
    "WebhookChannel",
    "FTPChannel",
    "ObjectStorageChannel",
    "LogChannel",
    "SubscriptionService",
]
