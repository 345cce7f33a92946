"""
Error taxonomy for the scheduling core.

Every failure that crosses a component boundary is one of these classes.
Each carries a human-readable `reason` that is written onto the meeting
request (`last_failure`) so a stuck request can be inspected and retried.
"""

from typing import Any


class SchedulingError(Exception):
    """Base exception for scheduling core errors."""

    error_type = "scheduling_error"

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.reason = message
        self.recoverable = recoverable

    def to_dict(self) -> dict[str, Any]:
        return {"error_type": self.error_type, "reason": self.reason, "recoverable": self.recoverable}


class ValidationError(SchedulingError):
    """Malformed tool input, creation payload or update payload. Never retried."""

    error_type = "validation_error"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message, recoverable=False)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        return data


class InvalidTransitionError(SchedulingError):
    """Requested status is not reachable from the current status."""

    error_type = "invalid_transition"

    def __init__(self, current_status: str, requested_status: str):
        super().__init__(
            f"Invalid status transition from {current_status} to {requested_status}",
            recoverable=False,
        )
        self.current_status = current_status
        self.requested_status = requested_status


class MeetingRequestNotFoundError(SchedulingError):
    error_type = "not_found"

    def __init__(self, meeting_request_id: str):
        super().__init__(f"Meeting request {meeting_request_id} not found", recoverable=False)
        self.meeting_request_id = meeting_request_id


class RequestBusyError(SchedulingError):
    """Another extraction/orchestration is already in flight for this request."""

    error_type = "request_busy"

    def __init__(self, meeting_request_id: str):
        super().__init__(f"Meeting request {meeting_request_id} is already being processed")
        self.meeting_request_id = meeting_request_id


class ConcurrentModificationError(SchedulingError):
    """Compare-and-set on the expected prior status lost against another writer."""

    error_type = "concurrent_modification"

    def __init__(self, meeting_request_id: str, expected_status: str, actual_status: str):
        super().__init__(
            f"Meeting request {meeting_request_id} changed concurrently: "
            f"expected status {expected_status}, found {actual_status}",
            recoverable=False,
        )
        self.meeting_request_id = meeting_request_id
        self.expected_status = expected_status
        self.actual_status = actual_status


class PersistenceError(SchedulingError):
    """Transient failure of the persistence backend."""

    error_type = "persistence_error"

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message, recoverable=recoverable)
        self.operation = operation


class ExtractionError(SchedulingError):
    """The language model returned no usable structure after the permitted retry."""

    error_type = "extraction_error"

    def __init__(self, message: str, details: str | None = None, recoverable: bool = True):
        super().__init__(message, recoverable=recoverable)
        self.details = details


class ToolExecutionError(SchedulingError):
    """A specific tool failed; classified by `kind`."""

    error_type = "tool_execution_error"

    KINDS = (
        "not_found",
        "rate_limited",
        "unavailable",
        "timeout",
        "invalid_input",
        "unknown_tool",
        "failed",
    )

    def __init__(self, tool_name: str, message: str, kind: str = "failed"):
        super().__init__(f"{tool_name}: {message}", recoverable=kind != "invalid_input")
        self.tool_name = tool_name
        self.kind = kind if kind in self.KINDS else "failed"
        self.detail = message


class PlanningExhaustedError(SchedulingError):
    """Round limit reached without a terminal decision."""

    error_type = "planning_exhausted"

    def __init__(self, rounds: int):
        super().__init__(f"No terminal decision after {rounds} planning rounds")
        self.rounds = rounds


class OrchestrationError(SchedulingError):
    """Persisting a terminal decision failed after bounded retries."""

    error_type = "orchestration_error"


class ProviderError(Exception):
    """
    Raised by external provider adapters (calendar, places, messaging, contacts).

    `kind` uses the same vocabulary as ToolExecutionError so the registry can
    classify without string matching.
    """

    def __init__(self, message: str, kind: str = "failed", status_code: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @classmethod
    def from_status(cls, message: str, status_code: int) -> "ProviderError":
        if status_code == 404:
            kind = "not_found"
        elif status_code == 429:
            kind = "rate_limited"
        elif status_code >= 500:
            kind = "unavailable"
        elif status_code in (400, 422):
            kind = "invalid_input"
        else:
            kind = "failed"
        return cls(message, kind=kind, status_code=status_code)
