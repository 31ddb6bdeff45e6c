"""
Subscription Service - per-user recurring report deliveries.

Provides:
- Subscription lifecycle (create, update, soft delete, enable, disable)
- A single FIFO delivery queue drained by one worker at a time
- A periodic sweep that queues every due subscription
- Delivery history and statistics
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..errors import NotFoundError, ValidationError
from ..models import (
    DeliveryStatus,
    DeliveryType,
    Subscription,
    SubscriptionDelivery,
    to_jsonable,
    utcnow,
)
from .cron import CronEvaluator
from .database import DurableStore, MemoryStore
from .delivery import DeliveryPayload, DeliveryService
from .engine import GenerateOptions, ReportEngine
from .export import ExportOptions
from .repository import Repository
from .schedule import calculate_next_run, validate_schedule

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "reportflow.subscriptions.sweep"
DRAIN_JOB_ID = "reportflow.subscriptions.drain"

# Fields a caller may not overwrite through update_subscription
_PROTECTED_FIELDS = ("id", "created_at", "delivery_count", "error_count", "deleted_at")


class SubscriptionService:
    """
    Turns subscriptions into deliveries.

    Deliveries are processed strictly in queue order by a single worker
    task. A failed delivery is not retried immediately; the subscription
    simply moves on to its next scheduled delivery.
    """

    def __init__(
        self,
        engine: ReportEngine,
        delivery: DeliveryService,
        events=None,
        store: Optional[DurableStore] = None,
        clock: Callable[[], datetime] = utcnow,
        cron: Optional[CronEvaluator] = None,
        sweep_interval: int = 60,
        drain_interval: int = 5,
        retention_days: int = 30,
    ):
        self._engine = engine
        self._delivery = delivery
        self._events = events
        self._clock = clock
        self._cron = cron or CronEvaluator()
        self.sweep_interval = sweep_interval
        self.drain_interval = drain_interval
        self.retention_days = retention_days

        store = store or MemoryStore()
        self._subscriptions: Repository[Subscription] = Repository(
            store, "subscriptions", lambda s: s.to_dict(), Subscription.from_dict
        )
        self._deliveries: Repository[SubscriptionDelivery] = Repository(
            store, "subscription_deliveries", lambda d: d.to_dict(), SubscriptionDelivery.from_dict
        )

        self._queue: Deque[Tuple[str, Optional[str]]] = deque()
        self._processing = False
        self._current: Optional[str] = None
        self._worker: Optional[asyncio.Task] = None

        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._started = False

    async def initialize(self) -> None:
        subscriptions = await self._subscriptions.load()
        deliveries = await self._deliveries.load()
        logger.info(
            f"SubscriptionService initialized ({subscriptions} subscriptions, {deliveries} deliveries)"
        )

    async def start(self) -> None:
        """Start the due sweep and the periodic drain trigger."""
        if self._started:
            return

        self._scheduler.start()
        self._scheduler.add_job(
            self.process_due,
            IntervalTrigger(seconds=self.sweep_interval),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._scheduler.add_job(
            self._drain_tick,
            IntervalTrigger(seconds=self.drain_interval),
            id=DRAIN_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

        self._started = True
        logger.info(
            f"SubscriptionService started (sweep every {self.sweep_interval}s, "
            f"drain every {self.drain_interval}s)"
        )

    async def stop(self) -> None:
        if not self._started:
            return

        self._scheduler.shutdown(wait=False)
        await self.wait_idle()
        self._started = False
        logger.info("SubscriptionService stopped")

    async def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._events:
            await self._events.emit(event_type, payload, source="subscriptions")

    def _next_delivery(
        self,
        subscription: Subscription,
        now: datetime,
        last_run: Optional[datetime] = None,
    ) -> Optional[datetime]:
        if not subscription.enabled or subscription.deleted_at is not None:
            return None
        return calculate_next_run(subscription.schedule, now, last_run, cron=self._cron)

    # =========================================================================
    # Validation
    # =========================================================================

    async def _validate(self, subscription: Subscription) -> None:
        errors = []
        if not subscription.name:
            errors.append("Subscription name is required")
        if not subscription.report_id:
            errors.append("Report ID is required")
        if subscription.schedule is None:
            errors.append("Schedule definition is required")
        if subscription.format is None:
            errors.append("Export format is required")

        config = subscription.delivery
        if config is None:
            errors.append("Delivery configuration is required")
        elif config.type == DeliveryType.EMAIL and not config.recipients:
            errors.append("Email delivery requires at least one recipient")
        elif config.type == DeliveryType.WEBHOOK and not config.webhook_url:
            errors.append("Webhook delivery requires webhook_url")
        elif config.type == DeliveryType.FTP and (config.ftp is None or not config.ftp.host):
            errors.append("FTP delivery requires a host")
        elif config.type == DeliveryType.S3 and (config.s3 is None or not config.s3.bucket):
            errors.append("S3 delivery requires a bucket")

        if errors:
            raise ValidationError(errors)

        validate_schedule(subscription.schedule, self._cron)
        await self._engine.get_report(subscription.report_id)

    # =========================================================================
    # Subscription management
    # =========================================================================

    async def create_subscription(self, data: Union[Subscription, Dict[str, Any]]) -> Subscription:
        """
        Validate and persist a new subscription.

        Raises:
            ValidationError: Missing or inconsistent fields
            NotFoundError: The report does not exist
        """
        subscription = Subscription.from_dict(data) if isinstance(data, dict) else data
        await self._validate(subscription)

        now = self._clock()
        subscription.id = subscription.id or str(uuid.uuid4())
        subscription.delivery_count = 0
        subscription.error_count = 0
        subscription.created_at = now
        subscription.updated_at = now
        subscription.next_delivery = self._next_delivery(subscription, now)

        await self._subscriptions.put(subscription)
        await self._emit("subscription.created", {
            "subscription_id": subscription.id,
            "report_id": subscription.report_id,
            "user_id": subscription.user_id,
        })
        logger.info(f"Created subscription {subscription.name} ({subscription.id})")
        return subscription

    async def update_subscription(self, subscription_id: str, changes: Dict[str, Any]) -> Subscription:
        existing = await self.get_subscription(subscription_id)

        data = existing.to_dict()
        data.update({k: v for k, v in changes.items() if k not in _PROTECTED_FIELDS})
        updated = Subscription.from_dict(data)
        await self._validate(updated)

        now = self._clock()
        updated.updated_at = now
        if "schedule" in changes or "enabled" in changes:
            updated.next_delivery = self._next_delivery(updated, now, updated.last_delivery)

        await self._subscriptions.put(updated)
        await self._emit("subscription.updated", {
            "subscription_id": subscription_id,
            "updates": sorted(changes),
        })
        logger.info(f"Updated subscription {subscription_id}")
        return updated

    async def delete_subscription(self, subscription_id: str) -> bool:
        """Soft delete: the row is kept with deleted_at set."""
        subscription = await self.get_subscription(subscription_id)
        now = self._clock()
        subscription.deleted_at = now
        subscription.enabled = False
        subscription.next_delivery = None
        subscription.updated_at = now

        await self._subscriptions.put(subscription)
        await self._emit("subscription.deleted", {
            "subscription_id": subscription_id,
            "report_id": subscription.report_id,
        })
        logger.info(f"Deleted subscription {subscription_id}")
        return True

    async def enable_subscription(self, subscription_id: str) -> Subscription:
        subscription = await self.get_subscription(subscription_id)
        now = self._clock()
        subscription.enabled = True
        subscription.next_delivery = self._next_delivery(subscription, now, subscription.last_delivery)
        subscription.updated_at = now

        await self._subscriptions.put(subscription)
        await self._emit("subscription.enabled", {
            "subscription_id": subscription_id,
            "next_delivery": subscription.next_delivery.isoformat() if subscription.next_delivery else None,
        })
        return subscription

    async def disable_subscription(self, subscription_id: str) -> Subscription:
        subscription = await self.get_subscription(subscription_id)
        subscription.enabled = False
        subscription.next_delivery = None
        subscription.updated_at = self._clock()

        await self._subscriptions.put(subscription)
        await self._emit("subscription.disabled", {"subscription_id": subscription_id})
        return subscription

    async def get_subscription(self, subscription_id: str) -> Subscription:
        subscription = await self._subscriptions.get(subscription_id)
        if subscription is None or subscription.deleted_at is not None:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    def _live(self) -> List[Subscription]:
        return [s for s in self._subscriptions.all() if s.deleted_at is None]

    def get_user_subscriptions(self, user_id: str) -> List[Subscription]:
        """Subscriptions owned by a user, newest first."""
        subscriptions = [s for s in self._live() if s.user_id == user_id]
        return sorted(subscriptions, key=lambda s: s.created_at, reverse=True)

    def get_report_subscriptions(self, report_id: str) -> List[Subscription]:
        subscriptions = [s for s in self._live() if s.report_id == report_id]
        return sorted(subscriptions, key=lambda s: s.created_at, reverse=True)

    def get_active_subscriptions(self) -> List[Subscription]:
        """Enabled, undeleted, unexpired subscriptions by next delivery."""
        now = self._clock()
        active = [s for s in self._live() if s.is_active(now)]
        return sorted(active, key=lambda s: (s.next_delivery is None, s.next_delivery or now))

    # =========================================================================
    # Delivery queue
    # =========================================================================

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    async def deliver_now(self, subscription_id: str) -> str:
        """
        Queue a delivery outside the schedule.

        Returns:
            Id the delivery record will carry once processed
        """
        subscription = await self.get_subscription(subscription_id)
        delivery_id = str(uuid.uuid4())
        self._queue.append((subscription.id, delivery_id))

        await self._emit("delivery.queued", {
            "delivery_id": delivery_id,
            "subscription_id": subscription.id,
            "report_id": subscription.report_id,
        })
        self._trigger_drain()
        return delivery_id

    async def process_due(self, now: Optional[datetime] = None) -> List[str]:
        """Queue every active subscription whose next delivery has passed."""
        now = now or self._clock()
        pending = {subscription_id for subscription_id, _ in self._queue}
        if self._current:
            pending.add(self._current)

        due = []
        for subscription in self._live():
            if not subscription.is_active(now) or subscription.next_delivery is None:
                continue
            if subscription.next_delivery > now or subscription.id in pending:
                continue
            delivery_id = str(uuid.uuid4())
            self._queue.append((subscription.id, delivery_id))
            due.append(subscription.id)
            await self._emit("delivery.queued", {
                "delivery_id": delivery_id,
                "subscription_id": subscription.id,
                "report_id": subscription.report_id,
            })

        if due:
            logger.info(f"Queued {len(due)} due subscription(s)")
        self._trigger_drain()
        return due

    def _trigger_drain(self) -> None:
        # Check and set with no suspension in between: one drain at a time
        if self._processing or not self._queue:
            return
        self._processing = True
        self._worker = asyncio.create_task(self._drain())

    async def _drain_tick(self) -> None:
        self._trigger_drain()

    async def _drain(self) -> None:
        try:
            while self._queue:
                subscription_id, delivery_id = self._queue.popleft()
                self._current = subscription_id
                try:
                    await self._process(subscription_id, delivery_id)
                except Exception as e:
                    logger.error(f"Delivery for subscription {subscription_id} failed: {e}")
                finally:
                    self._current = None
        finally:
            self._processing = False

    async def wait_idle(self) -> None:
        """Wait until the queue is empty and no drain is running."""
        while self._worker is not None and not self._worker.done():
            await asyncio.gather(self._worker, return_exceptions=True)

    async def _process(
        self,
        subscription_id: str,
        delivery_id: Optional[str] = None,
    ) -> Optional[SubscriptionDelivery]:
        subscription = await self._subscriptions.get(subscription_id)
        if subscription is None or not subscription.is_active(self._clock()):
            logger.debug(f"Subscription {subscription_id} is not deliverable, skipped")
            return None

        started_at = self._clock()
        started = time.perf_counter()
        delivery = SubscriptionDelivery(
            id=delivery_id or str(uuid.uuid4()),
            subscription_id=subscription.id,
            report_id=subscription.report_id,
            report_name=subscription.name,
            status=DeliveryStatus.PROCESSING,
            recipients=len(subscription.delivery.recipients),
            started_at=started_at,
        )
        await self._deliveries.put(delivery)
        await self._emit("delivery.started", {
            "delivery_id": delivery.id,
            "subscription_id": subscription.id,
        })

        try:
            parameters = {
                **subscription.parameters,
                "filters": [to_jsonable(f) for f in subscription.filters],
            }
            result = await self._engine.generate_report(
                subscription.report_id,
                parameters,
                GenerateOptions(use_cache=False),
            )
            exported = await self._engine.export_report(
                result,
                subscription.format,
                ExportOptions(title=subscription.name, parameters=dict(subscription.parameters)),
            )
            payload = DeliveryPayload(
                report_name=result.report_name,
                filename=exported.filename,
                content=exported.as_bytes(),
                content_type=exported.content_type,
                format=exported.format.value,
                subscription_id=subscription.id,
                subscription_name=subscription.name,
            )
            location = await self._delivery.deliver(subscription.delivery, payload)

            delivery.status = DeliveryStatus.SUCCESS
            delivery.file_size = exported.size_bytes
            delivery.file_url = location
        except Exception as e:
            delivery.status = DeliveryStatus.FAILED
            delivery.error = str(e)
            logger.error(f"Delivery {delivery.id} for subscription {subscription.id} failed: {e}")

        delivery.completed_at = self._clock()
        delivery.duration = (time.perf_counter() - started) * 1000

        # The subscription may have been updated or disabled while delivering
        current = await self._subscriptions.get(subscription.id) or subscription
        if delivery.status == DeliveryStatus.SUCCESS:
            current.delivery_count += 1
            current.last_delivery = delivery.completed_at
        else:
            current.error_count += 1

        now = self._clock()
        current.updated_at = now
        current.next_delivery = self._next_delivery(current, now, last_run=started_at)

        await self._subscriptions.put(current)
        await self._deliveries.put(delivery)

        if delivery.status == DeliveryStatus.SUCCESS:
            await self._emit("delivery.completed", {
                "delivery_id": delivery.id,
                "subscription_id": subscription.id,
                "duration": delivery.duration,
                "file_size": delivery.file_size,
            })
        else:
            await self._emit("delivery.failed", {
                "delivery_id": delivery.id,
                "subscription_id": subscription.id,
                "error": delivery.error,
            })
        return delivery

    # =========================================================================
    # History and statistics
    # =========================================================================

    def get_subscription_deliveries(self, subscription_id: str, limit: int = 50) -> List[SubscriptionDelivery]:
        """Delivery attempts for a subscription, newest first."""
        deliveries = [d for d in self._deliveries.all() if d.subscription_id == subscription_id]
        deliveries.sort(key=lambda d: d.started_at, reverse=True)
        return deliveries[:limit]

    async def get_delivery(self, delivery_id: str) -> SubscriptionDelivery:
        delivery = await self._deliveries.get(delivery_id)
        if delivery is None:
            raise NotFoundError("Delivery", delivery_id)
        return delivery

    def get_subscription_stats(self) -> Dict[str, Any]:
        now = self._clock()
        subscriptions = self._live()
        deliveries = self._deliveries.all()
        durations = [d.duration for d in deliveries if d.duration is not None]

        by_report: Dict[str, int] = {}
        by_format: Dict[str, int] = {}
        for subscription in subscriptions:
            by_report[subscription.report_id] = by_report.get(subscription.report_id, 0) + 1
            by_format[subscription.format.value] = by_format.get(subscription.format.value, 0) + 1

        return {
            "total": len(subscriptions),
            "active": sum(1 for s in subscriptions if s.is_active(now)),
            "by_report": by_report,
            "by_format": by_format,
            "queue_size": len(self._queue),
            "deliveries": {
                "total": len(deliveries),
                "success": sum(1 for d in deliveries if d.status == DeliveryStatus.SUCCESS),
                "failed": sum(1 for d in deliveries if d.status == DeliveryStatus.FAILED),
                "processing": sum(1 for d in deliveries if d.status == DeliveryStatus.PROCESSING),
                "average_duration": sum(durations) / len(durations) if durations else 0,
            },
        }

    async def cleanup(self, retention_days: Optional[int] = None) -> int:
        """Drop finished delivery rows older than the retention window."""
        days = self.retention_days if retention_days is None else retention_days
        cutoff = self._clock() - timedelta(days=days)
        stale = [
            d.id for d in self._deliveries.all()
            if d.status != DeliveryStatus.PROCESSING and d.started_at < cutoff
        ]
        for delivery_id in stale:
            await self._deliveries.delete(delivery_id)
        if stale:
            logger.info(f"Cleaned up {len(stale)} delivery records")
        return len(stale)
