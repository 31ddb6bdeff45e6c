"""
Tests for the ScheduleManager.

Tests for:
- Creating, updating, pausing, resuming and removing schedules
- Timer bookkeeping (one timer per job)
- The due sweep and single-flight firing
- Execution logs, failure recording and rescheduling

Run with:
    pytest tests/test_scheduler.py -v -s
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from reportflow.errors import DeliveryError, InvalidScheduleError, NotFoundError
from reportflow.models import DeliveryType, ExportFormat, Frequency, RunResult, utcnow
from reportflow.services.database import MemoryStore
from reportflow.services.engine import ReportEngine
from reportflow.services.scheduler import SWEEP_JOB_ID, ScheduleManager, ScheduleOptions
from reportflow.services.storage import StorageService

from conftest import FakeClock, GatedLoader, SALES_ROWS

DAILY = {"frequency": "daily", "time": "06:00"}
HOURLY = {"frequency": "hourly", "interval": 1}


@pytest.fixture
def delivery():
    service = MagicMock()
    service.deliver = AsyncMock(return_value="email:ops@example.com")
    return service


@pytest_asyncio.fixture
async def storage(tmp_path):
    service = StorageService(base_path=str(tmp_path))
    await service.initialize()
    yield service
    await service.shutdown()


@pytest_asyncio.fixture
async def manager(engine, delivery, storage, event_bus, clock):
    manager = ScheduleManager(
        engine=engine,
        delivery=delivery,
        storage=storage,
        events=event_bus,
        clock=clock,
    )
    await manager.initialize()
    yield manager
    await manager.stop()
    await manager.wait_idle()


def csv_options(**kwargs):
    return ScheduleOptions(format="csv", **kwargs)


# =============================================================================
# Schedule management
# =============================================================================

class TestScheduleManagement:
    """Test creating and changing schedules."""

    @pytest.mark.asyncio
    async def test_schedule_computes_next_run(self, manager, report_id, clock):
        schedule_id = await manager.schedule(report_id, DAILY, csv_options(name="Morning"))

        job = await manager.get_schedule(schedule_id)
        assert job.name == "Morning"
        assert job.enabled is True
        assert job.format == ExportFormat.CSV
        assert job.next_run == (clock() + timedelta(days=1)).replace(hour=6, minute=0)
        assert manager.active_timers() == [schedule_id]

    @pytest.mark.asyncio
    async def test_schedule_defaults_name_to_report(self, manager, report_id):
        schedule_id = await manager.schedule(report_id, DAILY)

        job = await manager.get_schedule(schedule_id)
        assert job.name == "Sales Summary"
        assert job.format == ExportFormat.PDF

    @pytest.mark.asyncio
    async def test_schedule_unknown_report(self, manager):
        with pytest.raises(NotFoundError):
            await manager.schedule("missing", DAILY)

        assert manager.get_scheduled_reports() == []

    @pytest.mark.asyncio
    async def test_schedule_invalid_definition(self, manager, report_id):
        with pytest.raises(InvalidScheduleError):
            await manager.schedule(report_id, {"frequency": "cron", "cron_expression": "bogus"})

        assert manager.get_scheduled_reports() == []
        assert manager.active_timers() == []

    @pytest.mark.asyncio
    async def test_reschedule_same_id_keeps_one_timer(self, manager, report_id, clock):
        """Scheduling an existing id should replace the job and its timer."""
        await manager.schedule(report_id, DAILY, csv_options(schedule_id="nightly"))
        await manager.schedule(report_id, HOURLY, csv_options(schedule_id="nightly"))

        assert manager.active_timers() == ["nightly"]
        assert len(manager.get_scheduled_reports()) == 1
        job = await manager.get_schedule("nightly")
        assert job.next_run == clock() + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_update_schedule_recomputes_next_run(self, manager, report_id, clock):
        schedule_id = await manager.schedule(report_id, DAILY, csv_options())

        job = await manager.update_schedule(schedule_id, {
            "schedule": HOURLY,
            "recipients": ["a@example.com"],
        })

        assert job.next_run == clock() + timedelta(hours=1)
        assert job.recipients == ["a@example.com"]
        assert manager.active_timers() == [schedule_id]

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, manager, report_id, clock):
        schedule_id = await manager.schedule(report_id, HOURLY, csv_options())

        paused = await manager.pause(schedule_id)
        assert paused.enabled is False
        assert paused.next_run is None
        assert manager.active_timers() == []

        clock.advance(minutes=10)
        resumed = await manager.resume(schedule_id)
        assert resumed.enabled is True
        assert resumed.next_run == clock() + timedelta(hours=1)
        assert manager.active_timers() == [schedule_id]

    @pytest.mark.asyncio
    async def test_unschedule_keeps_history(self, manager, report_id):
        schedule_id = await manager.schedule(report_id, HOURLY, csv_options())

        assert await manager.unschedule(schedule_id) is True

        job = await manager.get_schedule(schedule_id)
        assert job.enabled is False
        assert job.next_run is None
        assert manager.active_timers() == []

    @pytest.mark.asyncio
    async def test_get_unknown_schedule(self, manager):
        with pytest.raises(NotFoundError):
            await manager.get_schedule("missing")

    @pytest.mark.asyncio
    async def test_scheduled_reports_filtered_by_report(self, manager, engine, report_id, sales_report):
        other = await engine.register_report({**sales_report, "name": "Other"})
        await manager.schedule(report_id, DAILY)
        await manager.schedule(other, DAILY)

        assert len(manager.get_scheduled_reports()) == 2
        assert [j.report_id for j in manager.get_scheduled_reports(other)] == [other]

    @pytest.mark.asyncio
    async def test_created_event(self, manager, event_bus, report_id):
        schedule_id = await manager.schedule(report_id, DAILY)

        event = event_bus.get_events(event_type="schedule.created")[0]
        assert event.payload["schedule_id"] == schedule_id
        assert event.source == "scheduler"


# =============================================================================
# Execution
# =============================================================================

class TestScheduleExecution:
    """Test running scheduled reports and recording outcomes."""

    @pytest.mark.asyncio
    async def test_execute_records_success(self, manager, storage, report_id, clock):
        schedule_id = await manager.schedule(report_id, HOURLY, csv_options())
        started = clock()

        log = await manager.execute_schedule(schedule_id)

        assert log.status == RunResult.SUCCESS
        assert log.row_count == 5
        assert log.file_size > 0
        assert log.file_url == f"reports/{log.execution_id}.csv"
        assert f"reports/{log.execution_id}.csv" in await storage.list_files()

        job = await manager.get_schedule(schedule_id)
        assert job.last_run == started
        assert job.last_result == RunResult.SUCCESS
        assert job.next_run == started + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_execute_delivers_to_recipients(self, manager, delivery, report_id):
        schedule_id = await manager.schedule(
            report_id, HOURLY, csv_options(recipients=["ops@example.com"]),
        )

        await manager.execute_schedule(schedule_id)

        delivery.deliver.assert_awaited_once()
        config, payload = delivery.deliver.await_args.args
        assert config.type == DeliveryType.EMAIL
        assert config.recipients == ["ops@example.com"]
        assert payload.format == "csv"
        assert payload.content

    @pytest.mark.asyncio
    async def test_no_recipients_skips_delivery(self, manager, delivery, report_id):
        schedule_id = await manager.schedule(report_id, HOURLY, csv_options())

        await manager.execute_schedule(schedule_id)

        delivery.deliver.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_logged_and_rescheduled(self, manager, engine, event_bus, clock):
        """A failed run is recorded and the job still moves to its next run."""
        report_id = await engine.register_report({
            "name": "Broken",
            "datasets": [{"name": "rows", "table_name": "nope", "columns": ["a"]}],
        })
        schedule_id = await manager.schedule(report_id, HOURLY, csv_options())

        log = await manager.execute_schedule(schedule_id)

        assert log.status == RunResult.FAILED
        assert "Unknown table" in log.error
        job = await manager.get_schedule(schedule_id)
        assert job.last_result == RunResult.FAILED
        assert job.next_run == clock() + timedelta(hours=1)
        assert manager.active_timers() == [schedule_id]
        assert event_bus.get_events(event_type="schedule.failed")

    @pytest.mark.asyncio
    async def test_delivery_failure_fails_run(self, manager, delivery, report_id):
        delivery.deliver.side_effect = DeliveryError("SMTP down")
        schedule_id = await manager.schedule(
            report_id, HOURLY, csv_options(recipients=["ops@example.com"]),
        )

        log = await manager.execute_schedule(schedule_id)

        assert log.status == RunResult.FAILED
        assert log.error == "SMTP down"

    @pytest.mark.asyncio
    async def test_disabled_job_not_executed(self, manager, report_id):
        schedule_id = await manager.schedule(report_id, HOURLY, csv_options())
        await manager.pause(schedule_id)

        assert await manager.execute_schedule(schedule_id) is None
        assert manager.get_execution_logs(schedule_id) == []

    @pytest.mark.asyncio
    async def test_once_schedule_finishes(self, manager, report_id, clock):
        start = clock() + timedelta(hours=1)
        schedule_id = await manager.schedule(
            report_id, {"frequency": "once", "start_date": start.isoformat()}, csv_options(),
        )
        assert (await manager.get_schedule(schedule_id)).next_run == start

        clock.set(start)
        await manager.execute_schedule(schedule_id)

        job = await manager.get_schedule(schedule_id)
        assert job.next_run is None
        assert manager.active_timers() == []

    @pytest.mark.asyncio
    async def test_generation_bypasses_cache(self, manager, engine, report_id):
        await engine.generate_report(report_id)
        schedule_id = await manager.schedule(report_id, HOURLY, csv_options())

        log = await manager.execute_schedule(schedule_id)

        assert engine.get_execution(log.execution_id).result is not None

    @pytest.mark.asyncio
    async def test_logs_newest_first(self, manager, report_id, clock):
        schedule_id = await manager.schedule(report_id, HOURLY, csv_options())

        first = await manager.execute_schedule(schedule_id)
        clock.advance(hours=1)
        second = await manager.execute_schedule(schedule_id)

        logs = manager.get_execution_logs(schedule_id)
        assert [l.id for l in logs] == [second.id, first.id]
        assert manager.get_execution_logs(schedule_id, limit=1)[0].id == second.id

    @pytest.mark.asyncio
    async def test_schedule_stats(self, manager, engine, report_id, clock):
        ok = await manager.schedule(report_id, HOURLY, csv_options())
        broken_report = await engine.register_report({
            "name": "Broken",
            "datasets": [{"name": "rows", "table_name": "nope", "columns": ["a"]}],
        })
        broken = await manager.schedule(broken_report, HOURLY, csv_options())
        await manager.execute_schedule(ok)
        await manager.execute_schedule(broken)

        stats = manager.get_schedule_stats()
        assert stats["total_schedules"] == 2
        assert stats["active_schedules"] == 2
        assert stats["total_executions"] == 2
        assert stats["successful"] == 1
        assert stats["failed"] == 1
        assert stats["due_now"] == 0


# =============================================================================
# Due sweep
# =============================================================================

class TestDueSweep:
    """Test run_due and single-flight firing."""

    @pytest.mark.asyncio
    async def test_run_due_fires_due_jobs(self, manager, report_id, clock):
        due = await manager.schedule(report_id, HOURLY, csv_options())
        later = await manager.schedule(report_id, DAILY, csv_options())

        clock.advance(hours=1)
        fired = await manager.run_due()
        await manager.wait_idle()

        assert fired == [due]
        assert len(manager.get_execution_logs(due)) == 1
        assert manager.get_execution_logs(later) == []

    @pytest.mark.asyncio
    async def test_job_never_fires_twice_concurrently(self, manager, report_id, clock):
        schedule_id = await manager.schedule(report_id, HOURLY, csv_options())
        clock.advance(hours=1)

        first = await manager.run_due()
        second = await manager.run_due()
        assert manager.is_firing(schedule_id)
        await manager.wait_idle()

        assert first == [schedule_id]
        assert second == []
        assert len(manager.get_execution_logs(schedule_id)) == 1
        assert not manager.is_firing(schedule_id)

    @pytest.mark.asyncio
    async def test_run_due_skips_disabled(self, manager, report_id, clock):
        schedule_id = await manager.schedule(report_id, HOURLY, csv_options())
        await manager.unschedule(schedule_id)
        clock.advance(hours=2)

        assert await manager.run_due() == []

    @pytest.mark.asyncio
    async def test_daily_run_at_sweep_time(self, engine, report_id):
        """The sweep time becomes last_run and the base for next_run."""
        clock = FakeClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))
        manager = ScheduleManager(engine=engine, clock=clock)
        await manager.initialize()
        schedule_id = await manager.schedule(report_id, {"frequency": "daily", "time": "09:00"}, csv_options())
        sweep = datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)
        assert (await manager.get_schedule(schedule_id)).next_run == sweep

        fired = await manager.run_due(sweep)
        await manager.wait_idle()

        assert fired == [schedule_id]
        job = await manager.get_schedule(schedule_id)
        assert job.last_run == sweep
        assert job.next_run == datetime(2024, 1, 3, 9, 0, tzinfo=timezone.utc)
        assert manager.get_execution_logs(schedule_id)[0].started_at == sweep

    @pytest.mark.asyncio
    async def test_reschedule_while_running_keeps_new_definition(self, event_bus, clock, sales_report):
        loader = GatedLoader({"sales": [dict(r) for r in SALES_ROWS]})
        engine = ReportEngine(loader=loader, events=event_bus, clock=clock)
        await engine.initialize()
        manager = ScheduleManager(engine=engine, clock=clock)
        await manager.initialize()
        try:
            report_id = await engine.register_report(sales_report)
            await manager.schedule(report_id, HOURLY, csv_options(schedule_id="job-1"))
            clock.advance(hours=1)

            assert await manager.run_due() == ["job-1"]
            await loader.entered.wait()
            await manager.schedule(
                report_id, {"frequency": "daily", "time": "09:00"}, csv_options(schedule_id="job-1"),
            )
            loader.gate.set()
            await manager.wait_idle()

            job = await manager.get_schedule("job-1")
            assert job.schedule.frequency == Frequency.DAILY
            assert job.last_run is None
            assert job.next_run == datetime(2025, 1, 16, 9, 0, tzinfo=timezone.utc)
            assert manager.active_timers() == ["job-1"]
            assert len(manager.get_execution_logs("job-1")) == 1
        finally:
            await manager.stop()
            await engine.shutdown()

    @pytest.mark.asyncio
    async def test_timer_callback_fires_job(self, manager, report_id, clock):
        schedule_id = await manager.schedule(report_id, HOURLY, csv_options())
        clock.advance(hours=1)

        await manager._on_timer(schedule_id)
        await manager.wait_idle()

        assert len(manager.get_execution_logs(schedule_id)) == 1


# =============================================================================
# Lifecycle and persistence
# =============================================================================

class TestLifecycle:
    """Test start/stop and reloading from the durable store."""

    @pytest.mark.asyncio
    async def test_overdue_timer_fires_after_start(self, engine, report_id):
        """A job whose time has passed fires as soon as the scheduler starts."""
        clock = FakeClock(utcnow())
        manager = ScheduleManager(engine=engine, clock=clock, sweep_interval=3600)
        await manager.initialize()
        start = clock() - timedelta(seconds=1)
        schedule_id = await manager.schedule(
            report_id, {"frequency": "once", "start_date": start.isoformat()}, csv_options(),
        )

        await manager.start()
        try:
            for _ in range(100):
                if manager.get_execution_logs(schedule_id):
                    break
                await asyncio.sleep(0.02)
            await manager.wait_idle()
        finally:
            await manager.stop()

        logs = manager.get_execution_logs(schedule_id)
        assert len(logs) == 1
        assert logs[0].status == RunResult.SUCCESS

    @pytest.mark.asyncio
    async def test_sweep_job_not_listed_as_timer(self, engine, report_id):
        manager = ScheduleManager(engine=engine, clock=FakeClock(utcnow()))
        await manager.initialize()
        schedule_id = await manager.schedule(report_id, DAILY, csv_options())

        await manager.start()
        try:
            job_ids = [j.id for j in manager._scheduler.get_jobs()]
            assert SWEEP_JOB_ID in job_ids
            assert manager.active_timers() == [schedule_id]
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_schedules_reloaded_from_store(self, engine, report_id, clock):
        store = MemoryStore()
        first = ScheduleManager(engine=engine, store=store, clock=clock)
        await first.initialize()
        schedule_id = await first.schedule(report_id, DAILY, csv_options())
        await first.execute_schedule(schedule_id)

        second = ScheduleManager(engine=engine, store=store, clock=clock)
        await second.initialize()

        job = await second.get_schedule(schedule_id)
        assert job.format == ExportFormat.CSV
        assert job.last_result == RunResult.SUCCESS
        assert len(second.get_execution_logs(schedule_id)) == 1
