"""
Reportflow - Data Models

Dataclasses and enums for report definitions, executions, schedules
and subscriptions.
"""

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from .errors import ValidationError

E = TypeVar("E", bound=Enum)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO string or datetime into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid datetime: {value}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_enum(enum_cls: Type[E], value: Any, name: str) -> E:
    """Coerce a raw value into an enum member, raising ValidationError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {name}: {value} (expected one of {allowed})")


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, enums and datetimes into JSON-safe values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: to_jsonable(getattr(value, f.name))
            for f in fields(value)
            if f.name != "triggers"
        }
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


# === Enums ===

class ParameterType(str, Enum):
    """Declared type of a report parameter."""
    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"
    LIST = "list"


class FilterOperator(str, Enum):
    """Row filter comparison operators."""
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    LIKE = "like"
    IN = "in"
    BETWEEN = "between"
    ISNULL = "isnull"
    ISNOTNULL = "isnotnull"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class AggregateType(str, Enum):
    """Scalar reductions supported by the aggregator."""
    SUM = "sum"
    AVG = "avg"
    COUNT = "count"
    MIN = "min"
    MAX = "max"


class VisualizationType(str, Enum):
    BAR = "bar"
    LINE = "line"
    PIE = "pie"
    TABLE = "table"


class ExecutionStatus(str, Enum):
    """Status of a single pipeline run."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ResultStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class ExportFormat(str, Enum):
    """Output formats a result can be exported to."""
    PDF = "pdf"
    EXCEL = "excel"
    CSV = "csv"
    JSON = "json"
    XML = "xml"
    HTML = "html"
    YAML = "yaml"
    TEXT = "text"
    MARKDOWN = "markdown"


class Frequency(str, Enum):
    """Recurrence frequency of a schedule."""
    ONCE = "once"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CRON = "cron"


class RunResult(str, Enum):
    """Outcome of a scheduled run."""
    SUCCESS = "success"
    FAILED = "failed"


class DeliveryType(str, Enum):
    """Delivery channel types."""
    EMAIL = "email"
    WEBHOOK = "webhook"
    FTP = "ftp"
    S3 = "s3"
    SHAREPOINT = "sharepoint"
    LOG = "log"


class DeliveryStatus(str, Enum):
    """Status of a subscription delivery attempt."""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


# === Report definition ===

@dataclass
class ParameterDefinition:
    """A runtime parameter a report accepts."""
    name: str
    type: ParameterType = ParameterType.STRING
    required: bool = False
    default: Any = None
    label: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParameterDefinition":
        return cls(
            name=data.get("name", ""),
            type=parse_enum(ParameterType, data.get("type", "string"), "parameter type"),
            required=bool(data.get("required", False)),
            default=data.get("default"),
            label=data.get("label"),
        )


@dataclass
class FilterDefinition:
    """Row-level filter. `field` may be a dotted path into nested rows."""
    field: str
    operator: FilterOperator = FilterOperator.EQ
    value: Any = None
    second_value: Any = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FilterDefinition":
        return cls(
            field=data.get("field", ""),
            operator=parse_enum(FilterOperator, data.get("operator", "eq"), "filter operator"),
            value=data.get("value"),
            second_value=data.get("second_value", data.get("secondValue")),
        )


@dataclass
class SortDefinition:
    field: str
    direction: SortDirection = SortDirection.ASC

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SortDefinition":
        return cls(
            field=data.get("field", ""),
            direction=parse_enum(SortDirection, data.get("direction", "asc"), "sort direction"),
        )


@dataclass
class AggregationDefinition:
    field: str
    type: AggregateType
    alias: Optional[str] = None

    @property
    def key(self) -> str:
        return self.alias or f"{self.type.value}_{self.field}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregationDefinition":
        return cls(
            field=data.get("field", ""),
            type=parse_enum(AggregateType, data.get("type", "count"), "aggregation type"),
            alias=data.get("alias"),
        )


@dataclass
class TriggerHooks:
    """Lifecycle callbacks. Each may be sync or async; none are persisted."""
    on_pre_report: Optional[Callable] = None
    on_post_report: Optional[Callable] = None
    on_pre_dataset: Optional[Callable] = None
    on_post_dataset: Optional[Callable] = None


@dataclass
class DatasetDefinition:
    """A named row set loaded from one table."""
    name: str
    table_name: str
    columns: List[str] = field(default_factory=list)
    filters: List[FilterDefinition] = field(default_factory=list)
    aggregations: List[AggregationDefinition] = field(default_factory=list)
    group_by: List[str] = field(default_factory=list)
    sort: List[SortDefinition] = field(default_factory=list)
    limit: Optional[int] = None
    triggers: Optional[TriggerHooks] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatasetDefinition":
        return cls(
            name=data.get("name", ""),
            table_name=data.get("table_name", data.get("tableName", "")),
            columns=list(data.get("columns") or []),
            filters=[FilterDefinition.from_dict(f) for f in data.get("filters") or []],
            aggregations=[AggregationDefinition.from_dict(a) for a in data.get("aggregations") or []],
            group_by=list(data.get("group_by") or []),
            sort=[SortDefinition.from_dict(s) for s in data.get("sort") or []],
            limit=data.get("limit"),
        )


@dataclass
class VisualizationDefinition:
    """Chart or table built from one dataset of a result."""
    type: VisualizationType
    dataset: str
    id: Optional[str] = None
    title: Optional[str] = None
    x_field: Optional[str] = None
    y_fields: List[str] = field(default_factory=list)
    label_field: Optional[str] = None
    value_field: Optional[str] = None
    columns: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VisualizationDefinition":
        # Unknown types are kept as raw strings and skipped at build time
        raw_type = data.get("type", "table")
        try:
            viz_type = VisualizationType(raw_type)
        except ValueError:
            viz_type = raw_type
        return cls(
            type=viz_type,
            dataset=data.get("dataset", ""),
            id=data.get("id"),
            title=data.get("title"),
            x_field=data.get("x_field"),
            y_fields=list(data.get("y_fields") or []),
            label_field=data.get("label_field"),
            value_field=data.get("value_field"),
            columns=list(data.get("columns") or []),
        )


@dataclass
class ReportDefinition:
    """
    Declarative report: datasets plus the parameters, filters, sorts and
    visualizations applied to them.

    Treated as immutable by running executions; changed only through
    ReportEngine.update_report.
    """
    name: str
    datasets: List[DatasetDefinition] = field(default_factory=list)
    id: Optional[str] = None
    description: str = ""
    parameters: List[ParameterDefinition] = field(default_factory=list)
    filters: List[FilterDefinition] = field(default_factory=list)
    sort: List[SortDefinition] = field(default_factory=list)
    visualizations: List[VisualizationDefinition] = field(default_factory=list)
    triggers: Optional[TriggerHooks] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReportDefinition":
        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            description=data.get("description") or "",
            datasets=[DatasetDefinition.from_dict(d) for d in data.get("datasets") or []],
            parameters=[ParameterDefinition.from_dict(p) for p in data.get("parameters") or []],
            filters=[FilterDefinition.from_dict(f) for f in data.get("filters") or []],
            sort=[SortDefinition.from_dict(s) for s in data.get("sort") or []],
            visualizations=[
                VisualizationDefinition.from_dict(v) for v in data.get("visualizations") or []
            ],
            version=int(data.get("version", 1)),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
            created_by=data.get("created_by"),
            metadata=dict(data.get("metadata") or {}),
        )


# === Execution and result ===

@dataclass
class ReportResult:
    """Output of a successful execution. Never mutated once built."""
    id: str
    report_id: str
    report_name: str
    generated_at: datetime
    execution_time: float = 0.0
    parameters: Dict[str, Any] = field(default_factory=dict)
    data: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    visualizations: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    status: ResultStatus = ResultStatus.SUCCESS
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


@dataclass
class Execution:
    """One run of the report pipeline."""
    id: str
    report_id: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    progress: int = 0
    result: Optional[ReportResult] = None
    error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status == ExecutionStatus.RUNNING

    @property
    def duration_ms(self) -> Optional[float]:
        if not self.completed_at:
            return None
        return (self.completed_at - self.started_at).total_seconds() * 1000

    def advance(self, progress: int) -> None:
        """Move progress forward; it never goes backwards within a run."""
        self.progress = max(self.progress, min(progress, 100))

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


@dataclass
class CacheEntry:
    key: str
    result: ReportResult
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


# === Scheduling ===

@dataclass
class ScheduleDefinition:
    """
    Recurrence rule.

    day_of_week uses 0 = Sunday .. 6 = Saturday. time is "HH:MM" in the
    schedule's timezone.
    """
    frequency: Frequency
    interval: Optional[int] = None
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    time: Optional[str] = None
    cron_expression: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    timezone: str = "UTC"

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduleDefinition":
        return cls(
            frequency=parse_enum(Frequency, data.get("frequency"), "frequency"),
            interval=data.get("interval"),
            day_of_week=data.get("day_of_week", data.get("dayOfWeek")),
            day_of_month=data.get("day_of_month", data.get("dayOfMonth")),
            time=data.get("time"),
            cron_expression=data.get("cron_expression", data.get("cronExpression")),
            start_date=parse_datetime(data.get("start_date", data.get("startDate"))),
            end_date=parse_datetime(data.get("end_date", data.get("endDate"))),
            timezone=data.get("timezone") or "UTC",
        )


@dataclass
class ScheduledReport:
    """A report bound to a recurrence rule and a list of recipients."""
    id: str
    report_id: str
    name: str
    schedule: ScheduleDefinition
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    recipients: List[str] = field(default_factory=list)
    format: ExportFormat = ExportFormat.PDF
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_result: Optional[RunResult] = None
    enabled: bool = True
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledReport":
        last_result = data.get("last_result")
        return cls(
            id=data["id"],
            report_id=data["report_id"],
            name=data.get("name", ""),
            schedule=ScheduleDefinition.from_dict(data["schedule"]),
            description=data.get("description") or "",
            parameters=dict(data.get("parameters") or {}),
            recipients=list(data.get("recipients") or []),
            format=parse_enum(ExportFormat, data.get("format", "pdf"), "format"),
            next_run=parse_datetime(data.get("next_run")),
            last_run=parse_datetime(data.get("last_run")),
            last_result=RunResult(last_result) if last_result else None,
            enabled=bool(data.get("enabled", True)),
            created_by=data.get("created_by"),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
        )


@dataclass
class ExecutionLog:
    """Append-only record of one triggered scheduled run."""
    id: str
    schedule_id: str
    report_id: str
    execution_id: Optional[str]
    status: RunResult
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None
    row_count: Optional[int] = None
    file_size: Optional[int] = None
    file_url: Optional[str] = None
    error: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionLog":
        return cls(
            id=data["id"],
            schedule_id=data["schedule_id"],
            report_id=data["report_id"],
            execution_id=data.get("execution_id"),
            status=RunResult(data["status"]),
            started_at=parse_datetime(data["started_at"]),
            completed_at=parse_datetime(data.get("completed_at")),
            duration=data.get("duration"),
            row_count=data.get("row_count"),
            file_size=data.get("file_size"),
            file_url=data.get("file_url"),
            error=data.get("error"),
            parameters=dict(data.get("parameters") or {}),
        )


# === Subscriptions ===

@dataclass
class FTPConfig:
    host: str
    port: int = 21
    username: Optional[str] = None
    password: Optional[str] = None
    path: str = "/"
    secure: bool = False


@dataclass
class S3Config:
    bucket: str
    region: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    path: str = ""
    endpoint: Optional[str] = None


@dataclass
class DeliveryConfig:
    """Channel type plus the channel-specific settings."""
    type: DeliveryType
    recipients: List[str] = field(default_factory=list)
    subject: Optional[str] = None
    message: Optional[str] = None
    attachments: bool = True
    compress: bool = False
    webhook_url: Optional[str] = None
    webhook_headers: Dict[str, str] = field(default_factory=dict)
    ftp: Optional[FTPConfig] = None
    s3: Optional[S3Config] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeliveryConfig":
        ftp = data.get("ftp") or data.get("ftpConfig")
        s3 = data.get("s3") or data.get("s3Config")
        return cls(
            type=parse_enum(DeliveryType, data.get("type"), "delivery type"),
            recipients=list(data.get("recipients") or []),
            subject=data.get("subject"),
            message=data.get("message"),
            attachments=bool(data.get("attachments", True)),
            compress=bool(data.get("compress", False)),
            webhook_url=data.get("webhook_url", data.get("webhookUrl")),
            webhook_headers=dict(data.get("webhook_headers") or data.get("webhookHeaders") or {}),
            ftp=FTPConfig(**ftp) if ftp else None,
            s3=S3Config(**s3) if s3 else None,
        )


@dataclass
class Subscription:
    """A user-owned recurring delivery of one report."""
    id: str
    name: str
    report_id: str
    user_id: str
    schedule: ScheduleDefinition
    delivery: DeliveryConfig
    format: ExportFormat = ExportFormat.PDF
    description: str = ""
    user_name: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    filters: List[FilterDefinition] = field(default_factory=list)
    enabled: bool = True
    last_delivery: Optional[datetime] = None
    next_delivery: Optional[datetime] = None
    delivery_count: int = 0
    error_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_active(self, now: datetime) -> bool:
        if not self.enabled or self.deleted_at is not None:
            return False
        return self.expires_at is None or self.expires_at > now

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subscription":
        schedule = data.get("schedule")
        delivery = data.get("delivery")
        return cls(
            id=data.get("id") or "",
            name=data.get("name") or "",
            report_id=data.get("report_id") or "",
            user_id=data.get("user_id") or "",
            schedule=ScheduleDefinition.from_dict(schedule) if isinstance(schedule, dict) else schedule,
            delivery=DeliveryConfig.from_dict(delivery) if isinstance(delivery, dict) else delivery,
            format=parse_enum(ExportFormat, data.get("format") or "pdf", "format"),
            description=data.get("description") or "",
            user_name=data.get("user_name"),
            parameters=dict(data.get("parameters") or {}),
            filters=[FilterDefinition.from_dict(f) for f in data.get("filters") or []],
            enabled=bool(data.get("enabled", True)),
            last_delivery=parse_datetime(data.get("last_delivery")),
            next_delivery=parse_datetime(data.get("next_delivery")),
            delivery_count=int(data.get("delivery_count", 0)),
            error_count=int(data.get("error_count", 0)),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
            expires_at=parse_datetime(data.get("expires_at")),
            deleted_at=parse_datetime(data.get("deleted_at")),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class SubscriptionDelivery:
    """One delivery attempt for a subscription."""
    id: str
    subscription_id: str
    report_id: str
    report_name: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    recipients: int = 0
    file_size: Optional[int] = None
    file_url: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubscriptionDelivery":
        return cls(
            id=data["id"],
            subscription_id=data["subscription_id"],
            report_id=data["report_id"],
            report_name=data.get("report_name"),
            status=DeliveryStatus(data.get("status", "pending")),
            recipients=int(data.get("recipients", 0)),
            file_size=data.get("file_size"),
            file_url=data.get("file_url"),
            error=data.get("error"),
            started_at=parse_datetime(data.get("started_at")) or utcnow(),
            completed_at=parse_datetime(data.get("completed_at")),
            duration=data.get("duration"),
        )
