"""
Reportflow

Report execution and scheduling core: runs declarative report definitions,
caches their results, re-runs them on a schedule and delivers them to
subscribers.
"""

__version__ = "0.1.0"

# Frame class
from .frame import ReportFrame, get_frame

# Exceptions
from .errors import (
    ReportflowError,
    NotFoundError,
    ValidationError,
    InvalidScheduleError,
    ExecutionError,
    ExecutionCancelledError,
    DeliveryError,
    ExportError,
    ExportFormatError,
    ExportRenderError,
    StoreError,
)

__all__ = [
    "__version__",
    "ReportFrame",
    "get_frame",
    "ReportflowError",
    "NotFoundError",
    "ValidationError",
    "InvalidScheduleError",
    "ExecutionError",
    "ExecutionCancelledError",
    "DeliveryError",
    "ExportError",
    "ExportFormatError",
    "ExportRenderError",
    "StoreError",
]
