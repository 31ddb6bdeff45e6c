"""
Report Engine - runs report definitions through the load, filter,
aggregate, sort and visualize pipeline and caches the results.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from ..errors import (
    ExecutionCancelledError,
    ExecutionError,
    NotFoundError,
    ReportflowError,
    ValidationError,
)
from ..models import (
    Execution,
    ExecutionStatus,
    ExportFormat,
    FilterDefinition,
    ParameterType,
    ReportDefinition,
    ReportResult,
    ResultStatus,
    TriggerHooks,
    utcnow,
)
from .aggregations import Aggregator
from .cache import ResultCache, make_key
from .database import DurableStore, MemoryStore
from .datasets import DatasetLoader
from .export import ExportOptions, ExportResult, ExportService
from .filters import apply_filters, apply_sort
from .repository import Repository
from .visualizations import build_visualizations

logger = logging.getLogger(__name__)

# Progress checkpoints reached after each pipeline stage
PROGRESS_LOADED = 30
PROGRESS_FILTERED = 50
PROGRESS_AGGREGATED = 70
PROGRESS_SORTED = 80
PROGRESS_VISUALIZED = 90
PROGRESS_DONE = 100


@dataclass
class GenerateOptions:
    """Options for a single generate_report call."""
    use_cache: bool = True
    cache: bool = True
    cache_ttl: Optional[int] = None
    execution_id: Optional[str] = None


def validate_definition(definition: ReportDefinition) -> None:
    """Raise ValidationError listing every problem with a definition."""
    errors = []
    if not definition.name:
        errors.append("Report name is required")
    if not definition.datasets:
        errors.append("Report must have at least one dataset")

    seen = set()
    for index, dataset in enumerate(definition.datasets):
        label = dataset.name or f"#{index + 1}"
        if not dataset.name:
            errors.append(f"Dataset {label}: name is required")
        elif dataset.name in seen:
            errors.append(f"Dataset {label}: duplicate name")
        seen.add(dataset.name)
        if not dataset.table_name:
            errors.append(f"Dataset {label} must specify a table name")
        if not dataset.columns:
            errors.append(f"Dataset {label} must declare at least one column")

    for parameter in definition.parameters:
        if not parameter.name:
            errors.append("Parameter name is required")

    if errors:
        raise ValidationError(errors)


def _valid_for_type(value: Any, param_type: ParameterType) -> bool:
    if param_type == ParameterType.INTEGER:
        if isinstance(value, bool):
            return False
        if isinstance(value, int):
            return True
        if isinstance(value, float):
            return value.is_integer()
        return isinstance(value, str) and value.strip().lstrip("-").isdigit()
    if param_type == ParameterType.DECIMAL:
        if isinstance(value, bool):
            return False
        if isinstance(value, (int, float)):
            return True
        try:
            float(value)
            return True
        except (TypeError, ValueError):
            return False
    if param_type == ParameterType.BOOLEAN:
        return isinstance(value, bool)
    if param_type == ParameterType.DATE:
        if isinstance(value, (date, datetime)):
            return True
        try:
            datetime.fromisoformat(str(value).replace("Z", "+00:00"))
            return True
        except ValueError:
            return False
    if param_type == ParameterType.LIST:
        return isinstance(value, (list, tuple))
    return True


class ReportEngine:
    """
    Execution engine for report definitions.

    Provides:
    - Report registration and lifecycle (register, update, delete)
    - Synchronous and background generation with progress tracking
    - Cooperative cancellation
    - TTL result caching keyed by canonical parameters
    - Export through the ExportService
    """

    def __init__(
        self,
        loader: DatasetLoader,
        exporter: Optional[ExportService] = None,
        events=None,
        cache: Optional[ResultCache] = None,
        store: Optional[DurableStore] = None,
        aggregator: Optional[Aggregator] = None,
        clock: Callable[[], datetime] = utcnow,
        default_ttl: int = 3600,
        max_executions: int = 1000,
    ):
        """
        Initialize the engine.

        Args:
            loader: Dataset loader used for every dataset of a report
            exporter: Export service for export_report
            events: Optional event bus
            cache: Result cache (a new one is created if omitted)
            store: Durable store for report definitions
            aggregator: Aggregator for dataset aggregations
            clock: Returns the current aware UTC time
            default_ttl: Cache TTL in seconds when options give none
            max_executions: Finished executions kept in memory
        """
        self._loader = loader
        self._exporter = exporter or ExportService()
        self._events = events
        self._clock = clock
        self._cache = cache or ResultCache(clock=clock, default_ttl=default_ttl)
        self._aggregator = aggregator or Aggregator()
        self.default_ttl = default_ttl
        self._max_executions = max_executions

        self._reports: Repository[ReportDefinition] = Repository(
            store or MemoryStore(),
            "reports",
            lambda r: r.to_dict(),
            ReportDefinition.from_dict,
        )
        self._executions: Dict[str, Execution] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    async def initialize(self) -> None:
        count = await self._reports.load()
        logger.info(f"ReportEngine initialized ({count} reports)")

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("ReportEngine shut down")

    @property
    def cache(self) -> ResultCache:
        return self._cache

    async def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._events:
            await self._events.emit(event_type, payload, source="engine")

    # =========================================================================
    # Report definitions
    # =========================================================================

    async def register_report(self, definition: Union[ReportDefinition, Dict[str, Any]]) -> str:
        """Validate and store a definition. Returns its id."""
        if isinstance(definition, dict):
            definition = ReportDefinition.from_dict(definition)
        validate_definition(definition)

        now = self._clock()
        definition.id = definition.id or str(uuid.uuid4())
        definition.created_at = definition.created_at or now
        definition.updated_at = now

        await self._reports.put(definition)
        self._cache.invalidate(definition.id)
        await self._emit("report.registered", {"report_id": definition.id, "name": definition.name})
        logger.info(f"Registered report: {definition.name} ({definition.id})")
        return definition.id

    async def get_report(self, report_id: str) -> ReportDefinition:
        report = await self._reports.get(report_id)
        if report is None:
            raise NotFoundError("Report", report_id)
        return report

    def list_reports(self) -> List[ReportDefinition]:
        return sorted(self._reports.all(), key=lambda r: r.created_at or self._clock())

    async def update_report(
        self,
        report_id: str,
        changes: Union[ReportDefinition, Dict[str, Any]],
    ) -> ReportDefinition:
        """Apply changes, re-validate and bump the version."""
        existing = await self.get_report(report_id)

        if isinstance(changes, ReportDefinition):
            updated = replace(changes)
            if updated.triggers is None:
                updated.triggers = existing.triggers
        else:
            data = existing.to_dict()
            data.update({k: v for k, v in changes.items() if k != "triggers"})
            updated = ReportDefinition.from_dict(data)
            updated.triggers = changes.get("triggers", existing.triggers)

        validate_definition(updated)
        updated.id = existing.id
        updated.created_at = existing.created_at
        updated.version = existing.version + 1
        updated.updated_at = self._clock()

        await self._reports.put(updated)
        self._cache.invalidate(report_id)
        await self._emit("report.updated", {"report_id": report_id, "version": updated.version})
        logger.info(f"Updated report {report_id} to version {updated.version}")
        return updated

    async def delete_report(self, report_id: str) -> bool:
        await self.get_report(report_id)
        await self._reports.delete(report_id)
        self._cache.invalidate(report_id)
        await self._emit("report.deleted", {"report_id": report_id})
        logger.info(f"Deleted report {report_id}")
        return True

    # =========================================================================
    # Generation
    # =========================================================================

    def bind_parameters(
        self,
        report: ReportDefinition,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Apply declared defaults and validate required and typed parameters."""
        bound = dict(parameters or {})
        errors = []

        for declared in report.parameters:
            value = bound.get(declared.name)
            if value is None:
                if declared.default is not None:
                    bound[declared.name] = declared.default
                elif declared.required:
                    errors.append(f"Parameter {declared.name} is required")
                continue
            if not _valid_for_type(value, declared.type):
                errors.append(f"Parameter {declared.name} must be of type {declared.type.value}")

        if errors:
            raise ValidationError(errors)
        return bound

    async def generate_report(
        self,
        report_id: str,
        parameters: Optional[Dict[str, Any]] = None,
        options: Optional[GenerateOptions] = None,
    ) -> ReportResult:
        """
        Run the pipeline for a report.

        A live cache entry for the same report and canonical parameters is
        returned without loading any dataset. Failures mark the execution
        failed and are re-raised.

        Raises:
            NotFoundError: Unknown report
            ValidationError: Invalid parameters
            ExecutionCancelledError: Execution was cancelled mid-run
            ExecutionError: A loader, aggregator or trigger failed
        """
        options = options or GenerateOptions()
        report = await self.get_report(report_id)
        params = self.bind_parameters(report, parameters)
        key = make_key(report.id, params)

        execution = self._executions.get(options.execution_id) if options.execution_id else None
        if execution is not None and not execution.is_running:
            raise ExecutionCancelledError(
                f"Execution {execution.id} was cancelled before it started", execution.id
            )

        if options.use_cache:
            cached = self._cache.get(key)
            if cached is not None:
                logger.debug(f"Cache hit for report {report.id}")
                if execution is not None:
                    self._complete(execution, cached)
                return cached

        if execution is None:
            execution = Execution(
                id=options.execution_id or str(uuid.uuid4()),
                report_id=report.id,
                parameters=params,
                started_at=self._clock(),
            )
            self._track(execution)
        else:
            execution.parameters = params

        await self._emit("execution.started", {
            "execution_id": execution.id,
            "report_id": report.id,
            "parameters": params,
        })
        logger.info(f"Generating report {report.name} ({report.id}), execution {execution.id}")

        try:
            result = await self._run_pipeline(report, params, execution)
            self._ensure_running(execution)
        except ExecutionCancelledError:
            logger.info(f"Execution {execution.id} cancelled")
            raise
        except Exception as e:
            if execution.is_running:
                execution.status = ExecutionStatus.FAILED
                execution.error = str(e)
                execution.completed_at = self._clock()
            await self._emit("execution.failed", {
                "execution_id": execution.id,
                "report_id": report.id,
                "error": str(e),
            })
            logger.error(f"Execution {execution.id} failed: {e}")
            if isinstance(e, ReportflowError):
                raise
            raise ExecutionError(f"Report {report.id} failed: {e}", execution.id) from e

        # No suspension between the running check above and the cache write
        self._complete(execution, result)
        if options.cache:
            ttl = options.cache_ttl if options.cache_ttl is not None else self.default_ttl
            self._cache.put(key, result, ttl)

        await self._emit("execution.completed", {
            "execution_id": execution.id,
            "report_id": report.id,
            "row_count": result.row_count,
            "execution_time": result.execution_time,
        })
        return result

    def _complete(self, execution: Execution, result: ReportResult) -> None:
        execution.result = result
        execution.status = ExecutionStatus.COMPLETED
        execution.advance(PROGRESS_DONE)
        execution.completed_at = self._clock()

    def _ensure_running(self, execution: Execution) -> None:
        if execution.status == ExecutionStatus.CANCELLED:
            raise ExecutionCancelledError(f"Execution {execution.id} was cancelled", execution.id)

    def _checkpoint(self, execution: Execution, progress: int) -> None:
        self._ensure_running(execution)
        execution.advance(progress)

    async def _trigger(self, hooks: Optional[TriggerHooks], name: str, context: Dict[str, Any]) -> None:
        handler = getattr(hooks, name, None) if hooks else None
        if handler is None:
            return
        result = handler(context)
        if hasattr(result, "__await__"):
            await result

    def _parameter_filters(self, params: Dict[str, Any]) -> List[FilterDefinition]:
        raw = params.get("filters") or []
        if not isinstance(raw, (list, tuple)):
            raise ValidationError("Parameter filters must be a list")
        return [f if isinstance(f, FilterDefinition) else FilterDefinition.from_dict(f) for f in raw]

    async def _run_pipeline(
        self,
        report: ReportDefinition,
        params: Dict[str, Any],
        execution: Execution,
    ) -> ReportResult:
        started = time.perf_counter()
        context = {"report": report, "parameters": params, "execution_id": execution.id}

        await self._trigger(report.triggers, "on_pre_report", context)

        # Load
        data: Dict[str, List[Dict[str, Any]]] = {}
        for dataset in report.datasets:
            self._ensure_running(execution)
            dataset_context = {**context, "dataset": dataset}
            await self._trigger(dataset.triggers, "on_pre_dataset", dataset_context)
            rows = await self._loader.load(dataset, params)
            data[dataset.name] = list(rows)
            await self._trigger(dataset.triggers, "on_post_dataset", {**dataset_context, "rows": data[dataset.name]})
            await self._emit("dataset.loaded", {
                "execution_id": execution.id,
                "report_id": report.id,
                "dataset": dataset.name,
                "row_count": len(data[dataset.name]),
            })
        self._checkpoint(execution, PROGRESS_LOADED)

        # Filter
        global_filters = list(report.filters) + self._parameter_filters(params)
        for dataset in report.datasets:
            rows = apply_filters(data[dataset.name], global_filters)
            data[dataset.name] = apply_filters(rows, dataset.filters)
        row_count = sum(len(rows) for rows in data.values())
        self._checkpoint(execution, PROGRESS_FILTERED)

        # Aggregate
        for dataset in report.datasets:
            if dataset.aggregations:
                data[dataset.name] = self._aggregator.summarize(
                    data[dataset.name], dataset.aggregations, dataset.group_by
                )
        self._checkpoint(execution, PROGRESS_AGGREGATED)

        # Sort
        for dataset in report.datasets:
            data[dataset.name] = apply_sort(data[dataset.name], list(dataset.sort) + list(report.sort))
        self._checkpoint(execution, PROGRESS_SORTED)

        # Visualize
        visualizations = build_visualizations(report.visualizations, data)
        self._checkpoint(execution, PROGRESS_VISUALIZED)

        errors = []
        if len(visualizations) < len(report.visualizations):
            errors.append(
                f"{len(report.visualizations) - len(visualizations)} visualization(s) could not be built"
            )

        result = ReportResult(
            id=str(uuid.uuid4()),
            report_id=report.id,
            report_name=report.name,
            generated_at=self._clock(),
            execution_time=(time.perf_counter() - started) * 1000,
            parameters=params,
            data=data,
            visualizations=visualizations,
            row_count=row_count,
            status=ResultStatus.PARTIAL if errors else ResultStatus.SUCCESS,
            errors=errors,
        )

        await self._trigger(report.triggers, "on_post_report", {**context, "result": result})
        return result

    async def execute_async(
        self,
        report_id: str,
        parameters: Optional[Dict[str, Any]] = None,
        options: Optional[GenerateOptions] = None,
    ) -> str:
        """
        Start generation in the background and return the execution id.

        The execution is registered before this returns, so callers can poll
        get_execution immediately. Failures are logged, never raised.
        """
        report = await self.get_report(report_id)
        execution = Execution(
            id=str(uuid.uuid4()),
            report_id=report.id,
            parameters=dict(parameters or {}),
            started_at=self._clock(),
        )
        self._track(execution)

        opts = replace(options or GenerateOptions(), execution_id=execution.id)
        task = asyncio.create_task(self._run_async(report_id, parameters, opts))
        self._tasks[execution.id] = task
        task.add_done_callback(lambda _t, eid=execution.id: self._tasks.pop(eid, None))
        return execution.id

    async def _run_async(
        self,
        report_id: str,
        parameters: Optional[Dict[str, Any]],
        options: GenerateOptions,
    ) -> None:
        try:
            await self.generate_report(report_id, parameters, options)
        except ExecutionCancelledError:
            pass
        except Exception as e:
            execution = self._executions.get(options.execution_id)
            if execution is not None and execution.is_running:
                execution.status = ExecutionStatus.FAILED
                execution.error = str(e)
                execution.completed_at = self._clock()
            logger.error(f"Async execution {options.execution_id} failed: {e}")

    async def wait_for(self, execution_id: str) -> Execution:
        """Wait for a background execution to settle and return it."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.get_execution(execution_id)

    async def cancel_execution(self, execution_id: str) -> bool:
        """Cancel a running execution. Returns False if it already finished."""
        execution = self.get_execution(execution_id)
        if not execution.is_running:
            return False

        execution.status = ExecutionStatus.CANCELLED
        execution.completed_at = self._clock()
        await self._emit("execution.cancelled", {
            "execution_id": execution_id,
            "report_id": execution.report_id,
        })
        logger.info(f"Cancelled execution {execution_id}")
        return True

    # =========================================================================
    # Executions
    # =========================================================================

    def _track(self, execution: Execution) -> None:
        self._executions[execution.id] = execution
        overflow = len(self._executions) - self._max_executions
        if overflow <= 0:
            return
        finished = [e.id for e in self._executions.values() if not e.is_running]
        for execution_id in finished[:overflow]:
            del self._executions[execution_id]

    def get_execution(self, execution_id: str) -> Execution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        return execution

    def get_executions(
        self,
        report_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Execution]:
        """Executions, newest first."""
        executions = list(self._executions.values())
        if report_id:
            executions = [e for e in executions if e.report_id == report_id]
        if status:
            executions = [e for e in executions if e.status == status]
        executions.reverse()
        executions.sort(key=lambda e: e.started_at, reverse=True)
        return executions[:limit] if limit else executions

    def cleanup(self, older_than: Union[datetime, timedelta]) -> int:
        """Drop finished executions completed before a cutoff."""
        if isinstance(older_than, timedelta):
            older_than = self._clock() - older_than
        stale = [
            e.id for e in self._executions.values()
            if not e.is_running and e.completed_at and e.completed_at < older_than
        ]
        for execution_id in stale:
            del self._executions[execution_id]
        if stale:
            logger.info(f"Cleaned up {len(stale)} executions")
        return len(stale)

    # =========================================================================
    # Export
    # =========================================================================

    def _export_options(self, result: ReportResult, options: Optional[ExportOptions]) -> ExportOptions:
        options = replace(options) if options else ExportOptions()
        options.title = options.title or result.report_name
        options.generated_at = options.generated_at or result.generated_at
        options.parameters = options.parameters or dict(result.parameters)
        return options

    async def export_report(
        self,
        result: ReportResult,
        format: Union[ExportFormat, str],
        options: Optional[ExportOptions] = None,
    ) -> ExportResult:
        exported = self._exporter.export(result, format, self._export_options(result, options))
        await self._emit("report.exported", {
            "report_id": result.report_id,
            "format": exported.format.value,
            "size_bytes": exported.size_bytes,
        })
        return exported

    async def export_to_multiple(
        self,
        result: ReportResult,
        formats: Sequence[Union[ExportFormat, str]],
        options: Optional[ExportOptions] = None,
    ) -> Dict[ExportFormat, ExportResult]:
        exported = self._exporter.export_many(result, formats, self._export_options(result, options))
        for item in exported.values():
            await self._emit("report.exported", {
                "report_id": result.report_id,
                "format": item.format.value,
                "size_bytes": item.size_bytes,
            })
        return exported

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        executions = list(self._executions.values())
        completed = [e for e in executions if e.status == ExecutionStatus.COMPLETED]
        durations = [e.duration_ms for e in completed if e.duration_ms is not None]

        return {
            "total_reports": len(self._reports),
            "total_executions": len(executions),
            "successful": len(completed),
            "failed": sum(1 for e in executions if e.status == ExecutionStatus.FAILED),
            "running": sum(1 for e in executions if e.status == ExecutionStatus.RUNNING),
            "cancelled": sum(1 for e in executions if e.status == ExecutionStatus.CANCELLED),
            "cached_results": len(self._cache),
            "average_execution_time": sum(durations) / len(durations) if durations else 0,
        }
