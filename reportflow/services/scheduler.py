"""
Schedule Manager - recurring report execution.

Provides scheduling of reports on once/hourly/daily/weekly/monthly/cron
cadences, per-job timers, a periodic due sweep, and an append-only
execution log for every triggered run.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Union

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..errors import NotFoundError
from ..models import (
    DeliveryConfig,
    DeliveryType,
    ExecutionLog,
    ExportFormat,
    RunResult,
    ScheduleDefinition,
    ScheduledReport,
    utcnow,
)
from .cron import CronEvaluator
from .database import DurableStore, MemoryStore
from .delivery import DeliveryPayload, DeliveryService
from .engine import GenerateOptions, ReportEngine
from .export import ExportService
from .repository import Repository
from .schedule import calculate_next_run, validate_schedule
from .storage import StorageService

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "reportflow.schedules.sweep"


@dataclass
class ScheduleOptions:
    """Optional attributes of a new scheduled report."""
    schedule_id: Optional[str] = None
    name: Optional[str] = None
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    recipients: List[str] = field(default_factory=list)
    format: Union[ExportFormat, str] = ExportFormat.PDF
    created_by: Optional[str] = None


class ScheduleManager:
    """
    Runs reports on a recurrence rule.

    Every enabled job has at most one APScheduler timer keyed by its id. A
    sweep every `sweep_interval` seconds fires any enabled job whose
    next_run has passed, so a missed timer is picked up on the next sweep.
    A job never fires twice concurrently.
    """

    def __init__(
        self,
        engine: ReportEngine,
        delivery: Optional[DeliveryService] = None,
        storage: Optional[StorageService] = None,
        events=None,
        store: Optional[DurableStore] = None,
        clock: Callable[[], datetime] = utcnow,
        cron: Optional[CronEvaluator] = None,
        sweep_interval: int = 60,
    ):
        """
        Initialize the schedule manager.

        Args:
            engine: Report engine used to generate and export
            delivery: Delivery service for email recipients
            storage: Artifact storage for exported files
            events: Optional event bus
            store: Durable store for schedules and execution logs
            clock: Returns the current aware UTC time
            cron: Cron evaluator for cron schedules
            sweep_interval: Seconds between due sweeps
        """
        self._engine = engine
        self._delivery = delivery
        self._storage = storage
        self._events = events
        self._clock = clock
        self._cron = cron or CronEvaluator()
        self.sweep_interval = sweep_interval

        store = store or MemoryStore()
        self._schedules: Repository[ScheduledReport] = Repository(
            store, "schedules", lambda s: s.to_dict(), ScheduledReport.from_dict
        )
        self._logs: Repository[ExecutionLog] = Repository(
            store, "execution_logs", lambda l: l.to_dict(), ExecutionLog.from_dict
        )

        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._firing: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._started = False

    async def initialize(self) -> None:
        schedules = await self._schedules.load()
        logs = await self._logs.load()
        logger.info(f"ScheduleManager initialized ({schedules} schedules, {logs} log entries)")

    async def start(self) -> None:
        """Start timers for every enabled job and the due sweep."""
        if self._started:
            return

        self._scheduler.start()
        for job in self._schedules.all():
            self._arm(job)
        self._scheduler.add_job(
            self.run_due,
            IntervalTrigger(seconds=self.sweep_interval),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

        self._started = True
        logger.info(f"ScheduleManager started (sweep every {self.sweep_interval}s)")

    async def stop(self) -> None:
        """Stop timers and wait for in-flight runs."""
        if not self._started:
            return

        self._scheduler.shutdown(wait=False)
        await self.wait_idle()
        self._started = False
        logger.info("ScheduleManager stopped")

    async def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._events:
            await self._events.emit(event_type, payload, source="scheduler")

    def _next_run(self, job: ScheduledReport, now: datetime) -> Optional[datetime]:
        return calculate_next_run(job.schedule, now, job.last_run, cron=self._cron)

    # =========================================================================
    # Timers
    # =========================================================================

    def _disarm(self, schedule_id: str) -> None:
        try:
            self._scheduler.remove_job(schedule_id)
        except JobLookupError:
            pass

    def _arm(self, job: ScheduledReport) -> None:
        """Replace the job's timer with one for its current next_run."""
        self._disarm(job.id)
        if not job.enabled or job.next_run is None:
            return
        self._scheduler.add_job(
            self._on_timer,
            DateTrigger(run_date=job.next_run),
            args=[job.id],
            id=job.id,
            name=job.name,
            replace_existing=True,
            misfire_grace_time=None,
            coalesce=True,
        )
        logger.debug(f"Armed timer for {job.id} at {job.next_run.isoformat()}")

    async def _on_timer(self, schedule_id: str) -> None:
        self._spawn(schedule_id)

    def active_timers(self) -> List[str]:
        """Ids of jobs that currently hold a timer."""
        return sorted(j.id for j in self._scheduler.get_jobs() if j.id != SWEEP_JOB_ID)

    def _spawn(self, schedule_id: str, now: Optional[datetime] = None) -> bool:
        # Check and mark in one step so a job is never fired twice at once
        if schedule_id in self._firing:
            logger.debug(f"Schedule {schedule_id} already running, skipped")
            return False
        self._firing.add(schedule_id)

        task = asyncio.create_task(self._fire(schedule_id, now))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _fire(self, schedule_id: str, now: Optional[datetime] = None) -> None:
        try:
            await self.execute_schedule(schedule_id, now)
        except Exception as e:
            logger.error(f"Scheduled run {schedule_id} failed: {e}")
        finally:
            self._firing.discard(schedule_id)

    async def run_due(self, now: Optional[datetime] = None) -> List[str]:
        """Fire every enabled job whose next_run has passed. Returns fired ids."""
        now = now or self._clock()
        fired = []
        for job in self._schedules.all():
            if not job.enabled or job.next_run is None or job.next_run > now:
                continue
            if self._spawn(job.id, now):
                fired.append(job.id)
        if fired:
            logger.info(f"Due sweep fired {len(fired)} schedule(s)")
        return fired

    async def wait_idle(self) -> None:
        """Wait until no scheduled run is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def is_firing(self, schedule_id: str) -> bool:
        return schedule_id in self._firing

    # =========================================================================
    # Schedule management
    # =========================================================================

    async def schedule(
        self,
        report_id: str,
        schedule: Union[ScheduleDefinition, Dict[str, Any]],
        options: Optional[ScheduleOptions] = None,
    ) -> str:
        """
        Schedule a report.

        Scheduling an existing schedule_id replaces that job and its timer.

        Returns:
            Schedule id

        Raises:
            NotFoundError: Unknown report
            InvalidScheduleError: The schedule cannot produce run times
        """
        options = options or ScheduleOptions()
        report = await self._engine.get_report(report_id)
        if isinstance(schedule, dict):
            schedule = ScheduleDefinition.from_dict(schedule)
        validate_schedule(schedule, self._cron)

        now = self._clock()
        job = ScheduledReport(
            id=options.schedule_id or str(uuid.uuid4()),
            report_id=report.id,
            name=options.name or report.name,
            schedule=schedule,
            description=options.description,
            parameters=dict(options.parameters),
            recipients=list(options.recipients),
            format=ExportService.normalize_format(options.format),
            created_by=options.created_by,
            created_at=now,
            updated_at=now,
        )
        job.next_run = self._next_run(job, now)

        await self._schedules.put(job)
        self._arm(job)
        await self._emit("schedule.created", {
            "schedule_id": job.id,
            "report_id": job.report_id,
            "next_run": job.next_run.isoformat() if job.next_run else None,
        })
        logger.info(f"Scheduled report {report.id} as {job.id} ({schedule.frequency.value})")
        return job.id

    async def update_schedule(self, schedule_id: str, changes: Dict[str, Any]) -> ScheduledReport:
        job = await self.get_schedule(schedule_id)

        if "schedule" in changes:
            schedule = changes["schedule"]
            if isinstance(schedule, dict):
                schedule = ScheduleDefinition.from_dict(schedule)
            validate_schedule(schedule, self._cron)
            job.schedule = schedule
        for key in ("name", "description", "created_by"):
            if key in changes:
                setattr(job, key, changes[key])
        if "parameters" in changes:
            job.parameters = dict(changes["parameters"] or {})
        if "recipients" in changes:
            job.recipients = list(changes["recipients"] or [])
        if "format" in changes:
            job.format = ExportService.normalize_format(changes["format"])
        if "enabled" in changes:
            job.enabled = bool(changes["enabled"])

        now = self._clock()
        job.updated_at = now
        job.next_run = self._next_run(job, now) if job.enabled else None

        await self._schedules.put(job)
        self._arm(job)
        await self._emit("schedule.updated", {"schedule_id": job.id})
        logger.info(f"Updated schedule {job.id}")
        return job

    async def unschedule(self, schedule_id: str) -> bool:
        """Stop a job permanently. Its row and logs are kept for history."""
        job = await self.get_schedule(schedule_id)
        self._disarm(schedule_id)
        job.enabled = False
        job.next_run = None
        job.updated_at = self._clock()

        await self._schedules.put(job)
        await self._emit("schedule.removed", {"schedule_id": schedule_id})
        logger.info(f"Unscheduled {schedule_id}")
        return True

    async def pause(self, schedule_id: str) -> ScheduledReport:
        job = await self.get_schedule(schedule_id)
        self._disarm(schedule_id)
        job.enabled = False
        job.next_run = None
        job.updated_at = self._clock()

        await self._schedules.put(job)
        await self._emit("schedule.paused", {"schedule_id": schedule_id})
        logger.info(f"Paused schedule {schedule_id}")
        return job

    async def resume(self, schedule_id: str) -> ScheduledReport:
        job = await self.get_schedule(schedule_id)
        now = self._clock()
        job.enabled = True
        job.next_run = self._next_run(job, now)
        job.updated_at = now

        await self._schedules.put(job)
        self._arm(job)
        await self._emit("schedule.resumed", {
            "schedule_id": schedule_id,
            "next_run": job.next_run.isoformat() if job.next_run else None,
        })
        logger.info(f"Resumed schedule {schedule_id}")
        return job

    async def get_schedule(self, schedule_id: str) -> ScheduledReport:
        job = await self._schedules.get(schedule_id)
        if job is None:
            raise NotFoundError("Schedule", schedule_id)
        return job

    def get_scheduled_reports(self, report_id: Optional[str] = None) -> List[ScheduledReport]:
        jobs = self._schedules.all()
        if report_id:
            jobs = [j for j in jobs if j.report_id == report_id]
        return sorted(jobs, key=lambda j: j.created_at)

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute_schedule(
        self,
        schedule_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[ExecutionLog]:
        """
        Run a scheduled report once and record the outcome.

        Failures are recorded in the execution log, never raised; next_run is
        recomputed either way. `now` is the sweep time that triggered the run
        and becomes last_run and the base for next_run. A job replaced by
        schedule() while running keeps its new definition; only the log of
        the finished run is recorded.

        Returns:
            The execution log entry, or None if the job is disabled
        """
        job = await self.get_schedule(schedule_id)
        if not job.enabled:
            logger.debug(f"Schedule {schedule_id} is disabled, not executing")
            return None

        started_at = now or self._clock()
        started = time.perf_counter()
        execution_id = str(uuid.uuid4())
        log = ExecutionLog(
            id=str(uuid.uuid4()),
            schedule_id=job.id,
            report_id=job.report_id,
            execution_id=execution_id,
            status=RunResult.SUCCESS,
            started_at=started_at,
            parameters=dict(job.parameters),
        )

        try:
            result = await self._engine.generate_report(
                job.report_id,
                job.parameters,
                GenerateOptions(use_cache=False, execution_id=execution_id),
            )
            exported = await self._engine.export_report(result, job.format)
            content = exported.as_bytes()
            log.row_count = result.row_count
            log.file_size = exported.size_bytes

            if self._storage is not None:
                extension = ExportService.file_extension(exported.format)
                log.file_url = await self._storage.store(
                    f"{execution_id}.{extension}", content, category="reports"
                )

            if job.recipients and self._delivery is not None:
                await self._delivery.deliver(
                    DeliveryConfig(
                        type=DeliveryType.EMAIL,
                        recipients=list(job.recipients),
                        subject=f"Scheduled report: {job.name}",
                    ),
                    DeliveryPayload(
                        report_name=result.report_name,
                        filename=exported.filename,
                        content=content,
                        content_type=exported.content_type,
                        format=exported.format.value,
                    ),
                )
            job.last_result = RunResult.SUCCESS
        except Exception as e:
            log.status = RunResult.FAILED
            log.error = str(e)
            job.last_result = RunResult.FAILED
            logger.error(f"Scheduled report {job.id} failed: {e}")

        log.completed_at = self._clock()
        log.duration = (time.perf_counter() - started) * 1000

        await self._logs.put(log)

        current = await self._schedules.get(job.id)
        if current is job:
            job.last_run = started_at
            base = now or self._clock()
            job.updated_at = self._clock()
            if job.enabled:
                job.next_run = self._next_run(job, base)
            await self._schedules.put(job)
            self._arm(job)
        else:
            logger.info(f"Schedule {job.id} was replaced while running, keeping the new definition")
            job = current or job

        event = "schedule.executed" if log.status == RunResult.SUCCESS else "schedule.failed"
        await self._emit(event, {
            "schedule_id": job.id,
            "report_id": job.report_id,
            "execution_id": execution_id,
            "status": log.status.value,
            "error": log.error,
            "next_run": job.next_run.isoformat() if job.next_run else None,
        })
        return log

    def get_execution_logs(
        self,
        schedule_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[ExecutionLog]:
        """Execution log entries, newest first."""
        logs = self._logs.all()
        if schedule_id:
            logs = [l for l in logs if l.schedule_id == schedule_id]
        logs.sort(key=lambda l: l.started_at, reverse=True)
        return logs[:limit]

    def get_schedule_stats(self) -> Dict[str, Any]:
        now = self._clock()
        jobs = self._schedules.all()
        logs = self._logs.all()
        durations = [l.duration for l in logs if l.duration is not None]
        row_counts = [l.row_count for l in logs if l.row_count is not None]

        return {
            "total_schedules": len(jobs),
            "active_schedules": sum(1 for j in jobs if j.enabled),
            "due_now": sum(1 for j in jobs if j.enabled and j.next_run and j.next_run <= now),
            "total_executions": len(logs),
            "successful": sum(1 for l in logs if l.status == RunResult.SUCCESS),
            "failed": sum(1 for l in logs if l.status == RunResult.FAILED),
            "average_duration": sum(durations) / len(durations) if durations else 0,
            "average_row_count": sum(row_counts) / len(row_counts) if row_counts else 0,
        }
