"""
Shared error handling for the Food Traceability service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessLayerException(Exception):
    """Base exception for traceability services."""

    status_code: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        # OpenTelemetry trace id, not the food trace id
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class NotFoundError(AccessLayerException):
    """No record exists for the requested key."""

    status_code = 404

    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ValidationError(AccessLayerException):
    """Input or stored data is insufficient to evaluate."""

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = dict(details or {})
        if field:
            details.setdefault("field", field)
        self.field = field
        super().__init__("VALIDATION_ERROR", message, details)


class StoreError(AccessLayerException):
    """The persistence backend failed; callers may retry."""

    status_code = 503

    def __init__(self, message: str = "Record store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_ERROR", message, details)


class DuplicateRecordError(AccessLayerException):
    """A record with the same key already exists."""

    status_code = 409

    def __init__(self, message: str = "Record already exists", details: Optional[Dict[str, Any]] = None):
        super().__init__("DUPLICATE_RECORD", message, details)

