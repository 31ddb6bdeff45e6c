"""
Reportflow - FastAPI Routes

REST API endpoints for reports, executions, schedules and subscriptions.
"""

from contextlib import asynccontextmanager, contextmanager
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from . import __version__
from .errors import (
    ExecutionError,
    ExportFormatError,
    NotFoundError,
    ReportflowError,
    ValidationError,
)
from .models import ExecutionStatus, ExportFormat, ReportDefinition
from .services.engine import GenerateOptions
from .services.export import ExportOptions
from .services.scheduler import ScheduleOptions

if TYPE_CHECKING:
    from .frame import ReportFrame

router = APIRouter(prefix="/api/reports", tags=["reports"])

# === Pydantic Request/Response Models ===


class ReportCreate(BaseModel):
    """Request model for registering a report definition."""
    name: str = Field(..., description="Report name")
    description: str = Field(default="")
    datasets: List[Dict[str, Any]] = Field(default_factory=list, description="Dataset definitions")
    parameters: List[Dict[str, Any]] = Field(default_factory=list)
    filters: List[Dict[str, Any]] = Field(default_factory=list)
    sort: List[Dict[str, Any]] = Field(default_factory=list)
    visualizations: List[Dict[str, Any]] = Field(default_factory=list)
    created_by: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ReportResponse(BaseModel):
    """Response model for a report definition."""
    id: str
    name: str
    description: str
    version: int
    datasets: List[Dict[str, Any]]
    parameters: List[Dict[str, Any]]
    filters: List[Dict[str, Any]]
    sort: List[Dict[str, Any]]
    visualizations: List[Dict[str, Any]]
    created_at: Optional[str]
    updated_at: Optional[str]
    created_by: Optional[str]
    metadata: Dict[str, Any]


class GenerateRequest(BaseModel):
    """Request model for generating a report."""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    use_cache: bool = True
    cache: bool = True
    cache_ttl: Optional[int] = Field(default=None, ge=0, description="Cache TTL in seconds")


class ResultResponse(BaseModel):
    """Response model for a report result."""
    id: str
    report_id: str
    report_name: str
    generated_at: str
    execution_time: float
    parameters: Dict[str, Any]
    data: Dict[str, List[Dict[str, Any]]]
    visualizations: List[Dict[str, Any]]
    row_count: int
    status: str
    errors: List[str]


class ExecutionResponse(BaseModel):
    """Response model for an execution."""
    id: str
    report_id: str
    parameters: Dict[str, Any]
    status: str
    started_at: str
    completed_at: Optional[str]
    progress: int
    error: Optional[str]


class ExecuteResponse(BaseModel):
    execution_id: str


class CancelResponse(BaseModel):
    execution_id: str
    cancelled: bool


class ExportRequest(BaseModel):
    """Request model for exporting a report."""
    format: str = Field(default=ExportFormat.PDF.value, description="Export format")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    title: Optional[str] = None
    use_cache: bool = True
    page_size: str = Field(default="letter")
    orientation: str = Field(default="portrait")


class ScheduleCreate(BaseModel):
    """Request model for scheduling a report."""
    report_id: str = Field(..., description="Report to run")
    schedule: Dict[str, Any] = Field(..., description="Schedule definition")
    schedule_id: Optional[str] = None
    name: Optional[str] = None
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    recipients: List[str] = Field(default_factory=list)
    format: str = Field(default=ExportFormat.PDF.value)
    created_by: Optional[str] = None


class ScheduleResponse(BaseModel):
    """Response model for a scheduled report."""
    id: str
    report_id: str
    name: str
    description: str
    schedule: Dict[str, Any]
    parameters: Dict[str, Any]
    recipients: List[str]
    format: str
    enabled: bool
    next_run: Optional[str]
    last_run: Optional[str]
    last_result: Optional[str]
    created_by: Optional[str]
    created_at: str
    updated_at: str


class ExecutionLogResponse(BaseModel):
    id: str
    schedule_id: str
    report_id: str
    execution_id: Optional[str]
    status: str
    started_at: str
    completed_at: Optional[str]
    duration: Optional[float]
    row_count: Optional[int]
    file_size: Optional[int]
    file_url: Optional[str]
    error: Optional[str]


class SubscriptionCreate(BaseModel):
    """Request model for creating a subscription."""
    name: str = Field(..., description="Subscription name")
    report_id: str
    user_id: str
    schedule: Dict[str, Any]
    delivery: Dict[str, Any]
    format: str = Field(default=ExportFormat.PDF.value)
    description: str = ""
    user_name: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    filters: List[Dict[str, Any]] = Field(default_factory=list)
    enabled: bool = True
    expires_at: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SubscriptionUpdate(BaseModel):
    """Request model for updating a subscription. Omitted fields are kept."""
    name: Optional[str] = None
    description: Optional[str] = None
    schedule: Optional[Dict[str, Any]] = None
    delivery: Optional[Dict[str, Any]] = None
    format: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    filters: Optional[List[Dict[str, Any]]] = None
    enabled: Optional[bool] = None
    expires_at: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class SubscriptionResponse(BaseModel):
    """Response model for a subscription."""
    id: str
    name: str
    report_id: str
    user_id: str
    user_name: Optional[str]
    description: str
    schedule: Dict[str, Any]
    delivery: Dict[str, Any]
    format: str
    parameters: Dict[str, Any]
    filters: List[Dict[str, Any]]
    enabled: bool
    last_delivery: Optional[str]
    next_delivery: Optional[str]
    delivery_count: int
    error_count: int
    created_at: str
    updated_at: str
    expires_at: Optional[str]
    metadata: Dict[str, Any]


class DeliveryResponse(BaseModel):
    id: str
    subscription_id: str
    report_id: str
    report_name: Optional[str]
    status: str
    recipients: int
    file_size: Optional[int]
    file_url: Optional[str]
    error: Optional[str]
    started_at: str
    completed_at: Optional[str]
    duration: Optional[float]


class DeliverNowResponse(BaseModel):
    delivery_id: str
    subscription_id: str


class HealthResponse(BaseModel):
    """Response model for health check."""
    status: str
    version: str
    services: Dict[str, bool]


# === Helper Functions ===


def get_frame(request: Request) -> "ReportFrame":
    """Get the frame instance from app state."""
    frame = getattr(request.app.state, "reportflow", None)
    if not frame or not frame.initialized:
        raise HTTPException(status_code=503, detail="Reportflow not available")
    return frame


@contextmanager
def translate_errors():
    """Map service errors onto HTTP status codes."""
    try:
        yield
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (ValidationError, ExportFormatError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ExecutionError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except ReportflowError as e:
        raise HTTPException(status_code=500, detail=str(e))


# === Health and statistics ===


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint."""
    frame = get_frame(request)
    return HealthResponse(
        status="healthy",
        version=__version__,
        services={
            "engine": frame.engine is not None,
            "scheduler": frame.scheduler is not None,
            "subscriptions": frame.subscriptions is not None,
            "events": frame.events is not None,
            "storage": frame.storage is not None,
        },
    )


@router.get("/stats")
async def get_stats(request: Request):
    """Engine statistics plus cache counters."""
    frame = get_frame(request)
    return {
        **frame.engine.get_stats(),
        "cache": frame.engine.cache.get_stats(),
    }


# === Executions ===


@router.get("/executions", response_model=List[ExecutionResponse])
async def list_executions(
    request: Request,
    report_id: Optional[str] = Query(None),
    status: Optional[ExecutionStatus] = Query(None),
    limit: int = Query(50, ge=1, le=1000),
):
    """List executions, newest first."""
    frame = get_frame(request)
    executions = frame.engine.get_executions(report_id=report_id, status=status, limit=limit)
    return [ExecutionResponse(**e.to_dict()) for e in executions]


@router.get("/executions/{execution_id}", response_model=ExecutionResponse)
async def get_execution(request: Request, execution_id: str):
    frame = get_frame(request)
    with translate_errors():
        execution = frame.engine.get_execution(execution_id)
    return ExecutionResponse(**execution.to_dict())


@router.post("/executions/{execution_id}/cancel", response_model=CancelResponse)
async def cancel_execution(request: Request, execution_id: str):
    """Cancel a running execution."""
    frame = get_frame(request)
    with translate_errors():
        cancelled = await frame.engine.cancel_execution(execution_id)
    return CancelResponse(execution_id=execution_id, cancelled=cancelled)


# === Schedules ===


@router.get("/schedules", response_model=List[ScheduleResponse])
async def list_schedules(request: Request, report_id: Optional[str] = Query(None)):
    frame = get_frame(request)
    return [ScheduleResponse(**s.to_dict()) for s in frame.scheduler.get_scheduled_reports(report_id)]


@router.post("/schedules", response_model=ScheduleResponse, status_code=201)
async def create_schedule(request: Request, body: ScheduleCreate):
    """Schedule a report."""
    frame = get_frame(request)
    options = ScheduleOptions(
        schedule_id=body.schedule_id,
        name=body.name,
        description=body.description,
        parameters=body.parameters,
        recipients=body.recipients,
        format=body.format,
        created_by=body.created_by,
    )
    with translate_errors():
        schedule_id = await frame.scheduler.schedule(body.report_id, body.schedule, options)
        job = await frame.scheduler.get_schedule(schedule_id)
    return ScheduleResponse(**job.to_dict())


@router.get("/schedules/stats")
async def get_schedule_stats(request: Request):
    frame = get_frame(request)
    return frame.scheduler.get_schedule_stats()


@router.get("/schedules/logs", response_model=List[ExecutionLogResponse])
async def list_execution_logs(
    request: Request,
    schedule_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
):
    frame = get_frame(request)
    logs = frame.scheduler.get_execution_logs(schedule_id=schedule_id, limit=limit)
    return [ExecutionLogResponse(**l.to_dict()) for l in logs]


@router.get("/schedules/{schedule_id}", response_model=ScheduleResponse)
async def get_schedule(request: Request, schedule_id: str):
    frame = get_frame(request)
    with translate_errors():
        job = await frame.scheduler.get_schedule(schedule_id)
    return ScheduleResponse(**job.to_dict())


@router.delete("/schedules/{schedule_id}", status_code=204)
async def delete_schedule(request: Request, schedule_id: str):
    """Unschedule a report. The job is kept, disabled, for history."""
    frame = get_frame(request)
    with translate_errors():
        await frame.scheduler.unschedule(schedule_id)


@router.post("/schedules/{schedule_id}/pause", response_model=ScheduleResponse)
async def pause_schedule(request: Request, schedule_id: str):
    frame = get_frame(request)
    with translate_errors():
        job = await frame.scheduler.pause(schedule_id)
    return ScheduleResponse(**job.to_dict())


@router.post("/schedules/{schedule_id}/resume", response_model=ScheduleResponse)
async def resume_schedule(request: Request, schedule_id: str):
    frame = get_frame(request)
    with translate_errors():
        job = await frame.scheduler.resume(schedule_id)
    return ScheduleResponse(**job.to_dict())


@router.post("/schedules/{schedule_id}/run", response_model=Optional[ExecutionLogResponse])
async def run_schedule(request: Request, schedule_id: str):
    """Run a scheduled report now. Returns null if the job is disabled."""
    frame = get_frame(request)
    with translate_errors():
        log = await frame.scheduler.execute_schedule(schedule_id)
    return ExecutionLogResponse(**log.to_dict()) if log else None


# === Subscriptions ===


@router.get("/subscriptions", response_model=List[SubscriptionResponse])
async def list_subscriptions(
    request: Request,
    user_id: Optional[str] = Query(None),
    report_id: Optional[str] = Query(None),
):
    """Subscriptions of a user or a report; active subscriptions otherwise."""
    frame = get_frame(request)
    service = frame.subscriptions
    if user_id:
        subscriptions = service.get_user_subscriptions(user_id)
    elif report_id:
        subscriptions = service.get_report_subscriptions(report_id)
    else:
        subscriptions = service.get_active_subscriptions()
    return [SubscriptionResponse(**s.to_dict()) for s in subscriptions]


@router.post("/subscriptions", response_model=SubscriptionResponse, status_code=201)
async def create_subscription(request: Request, body: SubscriptionCreate):
    frame = get_frame(request)
    with translate_errors():
        subscription = await frame.subscriptions.create_subscription(body.model_dump())
    return SubscriptionResponse(**subscription.to_dict())


@router.get("/subscriptions/stats")
async def get_subscription_stats(request: Request):
    frame = get_frame(request)
    return frame.subscriptions.get_subscription_stats()


@router.get("/subscriptions/deliveries/{delivery_id}", response_model=DeliveryResponse)
async def get_delivery(request: Request, delivery_id: str):
    frame = get_frame(request)
    with translate_errors():
        delivery = await frame.subscriptions.get_delivery(delivery_id)
    return DeliveryResponse(**delivery.to_dict())


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(request: Request, subscription_id: str):
    frame = get_frame(request)
    with translate_errors():
        subscription = await frame.subscriptions.get_subscription(subscription_id)
    return SubscriptionResponse(**subscription.to_dict())


@router.patch("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
async def update_subscription(request: Request, subscription_id: str, body: SubscriptionUpdate):
    frame = get_frame(request)
    changes = body.model_dump(exclude_unset=True)
    with translate_errors():
        subscription = await frame.subscriptions.update_subscription(subscription_id, changes)
    return SubscriptionResponse(**subscription.to_dict())


@router.delete("/subscriptions/{subscription_id}", status_code=204)
async def delete_subscription(request: Request, subscription_id: str):
    frame = get_frame(request)
    with translate_errors():
        await frame.subscriptions.delete_subscription(subscription_id)


@router.post("/subscriptions/{subscription_id}/enable", response_model=SubscriptionResponse)
async def enable_subscription(request: Request, subscription_id: str):
    frame = get_frame(request)
    with translate_errors():
        subscription = await frame.subscriptions.enable_subscription(subscription_id)
    return SubscriptionResponse(**subscription.to_dict())


@router.post("/subscriptions/{subscription_id}/disable", response_model=SubscriptionResponse)
async def disable_subscription(request: Request, subscription_id: str):
    frame = get_frame(request)
    with translate_errors():
        subscription = await frame.subscriptions.disable_subscription(subscription_id)
    return SubscriptionResponse(**subscription.to_dict())


@router.post("/subscriptions/{subscription_id}/deliver", response_model=DeliverNowResponse, status_code=202)
async def deliver_now(request: Request, subscription_id: str):
    """Queue a delivery immediately."""
    frame = get_frame(request)
    with translate_errors():
        delivery_id = await frame.subscriptions.deliver_now(subscription_id)
    return DeliverNowResponse(delivery_id=delivery_id, subscription_id=subscription_id)


@router.get("/subscriptions/{subscription_id}/deliveries", response_model=List[DeliveryResponse])
async def list_deliveries(
    request: Request,
    subscription_id: str,
    limit: int = Query(50, ge=1, le=500),
):
    frame = get_frame(request)
    deliveries = frame.subscriptions.get_subscription_deliveries(subscription_id, limit=limit)
    return [DeliveryResponse(**d.to_dict()) for d in deliveries]


# === Reports CRUD ===


@router.get("/", response_model=List[ReportResponse])
async def list_reports(request: Request):
    frame = get_frame(request)
    return [ReportResponse(**r.to_dict()) for r in frame.engine.list_reports()]


@router.post("/", response_model=ReportResponse, status_code=201)
async def register_report(request: Request, body: ReportCreate):
    """Register a report definition."""
    frame = get_frame(request)
    with translate_errors():
        report_id = await frame.engine.register_report(ReportDefinition.from_dict(body.model_dump()))
        report = await frame.engine.get_report(report_id)
    return ReportResponse(**report.to_dict())


@router.get("/{report_id}", response_model=ReportResponse)
async def get_report(request: Request, report_id: str):
    frame = get_frame(request)
    with translate_errors():
        report = await frame.engine.get_report(report_id)
    return ReportResponse(**report.to_dict())


@router.put("/{report_id}", response_model=ReportResponse)
async def update_report(request: Request, report_id: str, body: ReportCreate):
    frame = get_frame(request)
    with translate_errors():
        report = await frame.engine.update_report(report_id, body.model_dump())
    return ReportResponse(**report.to_dict())


@router.delete("/{report_id}", status_code=204)
async def delete_report(request: Request, report_id: str):
    frame = get_frame(request)
    with translate_errors():
        await frame.engine.delete_report(report_id)


@router.post("/{report_id}/generate", response_model=ResultResponse)
async def generate_report(request: Request, report_id: str, body: GenerateRequest):
    """Run the report pipeline and return the result."""
    frame = get_frame(request)
    options = GenerateOptions(use_cache=body.use_cache, cache=body.cache, cache_ttl=body.cache_ttl)
    with translate_errors():
        result = await frame.engine.generate_report(report_id, body.parameters, options)
    return ResultResponse(**result.to_dict())


@router.post("/{report_id}/execute", response_model=ExecuteResponse, status_code=202)
async def execute_report(request: Request, report_id: str, body: GenerateRequest):
    """Start generation in the background; poll /executions/{id}."""
    frame = get_frame(request)
    options = GenerateOptions(use_cache=body.use_cache, cache=body.cache, cache_ttl=body.cache_ttl)
    with translate_errors():
        execution_id = await frame.engine.execute_async(report_id, body.parameters, options)
    return ExecuteResponse(execution_id=execution_id)


@router.post("/{report_id}/export")
async def export_report(request: Request, report_id: str, body: ExportRequest):
    """Generate a report and return the exported artifact."""
    frame = get_frame(request)
    options = ExportOptions(
        title=body.title,
        page_size=body.page_size,
        orientation=body.orientation,
    )
    with translate_errors():
        result = await frame.engine.generate_report(
            report_id, body.parameters, GenerateOptions(use_cache=body.use_cache)
        )
        exported = await frame.engine.export_report(result, body.format, options)
    return Response(
        content=exported.as_bytes(),
        media_type=exported.content_type,
        headers={"Content-Disposition": f'attachment; filename="{exported.filename}"'},
    )


# === Application ===


def create_app(frame: Optional["ReportFrame"] = None, start: bool = True) -> FastAPI:
    """
    Build a FastAPI app serving the router.

    The frame is initialized (and its sweeps started, when `start`) on
    startup and shut down with the app.
    """
    if frame is None:
        from .frame import ReportFrame
        frame = ReportFrame()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await frame.initialize()
        if start:
            await frame.start()
        try:
            yield
        finally:
            await frame.shutdown()

    app = FastAPI(title="Reportflow", version=__version__, lifespan=lifespan)
    app.state.reportflow = frame
    app.include_router(router)
    return app
