"""
Error taxonomy shared by the engine, scheduler and subscription services.
"""

from typing import List, Optional, Union


class ReportflowError(Exception):
    """Base exception for reportflow errors."""
    pass


class NotFoundError(ReportflowError):
    """Unknown report, schedule, subscription, execution or delivery id."""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} not found: {entity_id}")


class ValidationError(ReportflowError):
    """A definition is missing required fields or carries invalid values."""

    def __init__(self, errors: Union[str, List[str]]):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class InvalidScheduleError(ValidationError):
    """Invalid schedule configuration."""
    pass


class ExecutionError(ReportflowError):
    """A collaborator failed while a report pipeline was running."""

    def __init__(self, message: str, execution_id: Optional[str] = None):
        self.execution_id = execution_id
        super().__init__(message)


class ExecutionCancelledError(ExecutionError):
    """The execution was cancelled before it finished."""
    pass


class DeliveryError(ReportflowError):
    """A delivery channel failed to hand off an artifact."""
    pass


class ExportError(ReportflowError):
    """Base exception for export errors."""
    pass


class ExportFormatError(ExportError):
    """Invalid or unsupported export format."""
    pass


class ExportRenderError(ExportError):
    """Error during export rendering."""
    pass


class StoreError(ReportflowError):
    """Durable store operation failed."""

    def __init__(self, message: str, table: str = ""):
        self.table = table
        super().__init__(f"{message} (table: {table})" if table else message)
