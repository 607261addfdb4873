"""
Shared error handling for the Directory Access service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel
from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for Directory Access errors."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        # Get trace ID from current span
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


class ValidationError(AccessLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class RecordNotFound(AccessLayerException):
    """No access record exists for the subject."""

    status_code = 404

    def __init__(self, subject_id: str):
        super().__init__(
            "RECORD_NOT_FOUND",
            f"No access record for {subject_id}",
            {"subject_id": subject_id}
        )
        self.subject_id = subject_id


class InvalidTransition(AccessLayerException):
    """Requested transition is illegal from the record's current status."""

    status_code = 409

    def __init__(self, subject_id: str, transition: str, current_status: str):
        super().__init__(
            "INVALID_TRANSITION",
            f"Cannot {transition} access for {subject_id} while {current_status}",
            {"subject_id": subject_id, "transition": transition, "status": current_status}
        )
        self.subject_id = subject_id
        self.transition = transition
        self.current_status = current_status


class ConcurrentModification(AccessLayerException):
    """Write precondition failed because the record changed after it was read."""

    status_code = 409

    def __init__(self, subject_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            "CONCURRENT_MODIFICATION",
            f"Access record for {subject_id} was modified concurrently",
            {"subject_id": subject_id, **(details or {})}
        )
        self.subject_id = subject_id


class StoreUnavailable(AccessLayerException):
    """Underlying store call failed."""

    status_code = 503

    def __init__(self, message: str = "Access store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)
