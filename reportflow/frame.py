"""
ReportFrame - The core orchestrator.

Builds and wires every reportflow service and owns their lifecycle.
"""

from datetime import datetime
from typing import Callable, Optional
import logging

from reportflow.models import utcnow
from reportflow.services.cache import ResultCache
from reportflow.services.config import ConfigService
from reportflow.services.cron import CronEvaluator
from reportflow.services.database import SQLStore, create_store
from reportflow.services.datasets import DatasetLoader, MemoryDatasetLoader, SQLDatasetLoader
from reportflow.services.delivery import DeliveryService
from reportflow.services.engine import ReportEngine
from reportflow.services.events import EventBus
from reportflow.services.export import ExportService
from reportflow.services.scheduler import ScheduleManager
from reportflow.services.storage import StorageService
from reportflow.services.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)

# Global frame instance
_frame_instance: Optional["ReportFrame"] = None


def get_frame() -> "ReportFrame":
    """Get the global Frame instance."""
    if _frame_instance is None:
        raise RuntimeError("Frame not initialized. Call ReportFrame() first.")
    return _frame_instance


class ReportFrame:
    """
    The ReportFrame orchestrates all services.

    Services:
        - config: Configuration management
        - events: Event bus
        - store: Durable store (SQL when database_url is set, else memory)
        - storage: Artifact storage
        - exporter: Export formats
        - delivery: Delivery channels
        - engine: Report execution engine
        - scheduler: Schedule manager
        - subscriptions: Subscription delivery queue
    """

    def __init__(
        self,
        config: Optional[ConfigService] = None,
        loader: Optional[DatasetLoader] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        global _frame_instance

        self.config = config or ConfigService()
        self.clock = clock or utcnow
        self._loader = loader

        self.events: Optional[EventBus] = None
        self.store = None
        self.storage: Optional[StorageService] = None
        self.exporter: Optional[ExportService] = None
        self.delivery: Optional[DeliveryService] = None
        self.engine: Optional[ReportEngine] = None
        self.scheduler: Optional[ScheduleManager] = None
        self.subscriptions: Optional[SubscriptionService] = None

        self._initialized = False
        self._started = False

        _frame_instance = self

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Initialize all services in dependency order."""
        if self._initialized:
            return
        logger.info("Initializing ReportFrame...")

        self.events = EventBus()
        await self.events.initialize()

        self.store = create_store(self.config.database_url)
        await self.store.initialize()
        logger.info(f"Durable store ready ({type(self.store).__name__})")

        self.storage = StorageService(config=self.config)
        await self.storage.initialize()

        loader = self._loader
        if loader is None:
            if isinstance(self.store, SQLStore):
                loader = SQLDatasetLoader(self.store.engine)
            else:
                loader = MemoryDatasetLoader()
        self._loader = loader

        cache_ttl = self.config.get("engine.cache_ttl", 3600)
        cron = CronEvaluator()

        self.exporter = ExportService()
        self.delivery = DeliveryService.from_config(self.config, storage=self.storage)
        self.engine = ReportEngine(
            loader=loader,
            exporter=self.exporter,
            events=self.events,
            cache=ResultCache(clock=self.clock, default_ttl=cache_ttl),
            store=self.store,
            clock=self.clock,
            default_ttl=cache_ttl,
        )
        self.scheduler = ScheduleManager(
            engine=self.engine,
            delivery=self.delivery,
            storage=self.storage,
            events=self.events,
            store=self.store,
            clock=self.clock,
            cron=cron,
            sweep_interval=self.config.get("scheduler.sweep_interval", 60),
        )
        self.subscriptions = SubscriptionService(
            engine=self.engine,
            delivery=self.delivery,
            events=self.events,
            store=self.store,
            clock=self.clock,
            cron=cron,
            sweep_interval=self.config.get("subscriptions.sweep_interval", 60),
            drain_interval=self.config.get("subscriptions.drain_interval", 5),
            retention_days=self.config.get("subscriptions.retention_days", 30),
        )

        await self.engine.initialize()
        await self.scheduler.initialize()
        await self.subscriptions.initialize()

        self._initialized = True
        logger.info("ReportFrame initialization complete")

    @property
    def loader(self) -> Optional[DatasetLoader]:
        return self._loader

    async def start(self) -> None:
        """Start the schedule and subscription sweeps."""
        if not self._initialized:
            await self.initialize()
        if self._started:
            return
        await self.scheduler.start()
        await self.subscriptions.start()
        self._started = True
        logger.info("ReportFrame started")

    async def shutdown(self) -> None:
        """Shutdown all services in reverse order."""
        global _frame_instance

        logger.info("Shutting down ReportFrame...")

        if self._started:
            await self.subscriptions.stop()
            await self.scheduler.stop()
            self._started = False

        if self.engine:
            await self.engine.shutdown()
        if self.storage:
            await self.storage.shutdown()
        if self.store:
            await self.store.shutdown()
        if self.events:
            await self.events.shutdown()

        self._initialized = False
        if _frame_instance is self:
            _frame_instance = None
        logger.info("ReportFrame shutdown complete")

    def get_state(self) -> dict:
        """Summary of service state for health checks."""
        return {
            "initialized": self._initialized,
            "started": self._started,
            "store": type(self.store).__name__ if self.store else None,
            "reports": self.engine.get_stats() if self.engine else None,
            "schedules": self.scheduler.get_schedule_stats() if self.scheduler else None,
            "subscriptions": self.subscriptions.get_subscription_stats() if self.subscriptions else None,
        }
