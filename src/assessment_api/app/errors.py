"""Error taxonomy for the assessment and report lifecycle.

Every error carries the HTTP status the API layer answers with, so route
handlers can let them propagate to the exception handler in ``main``.
"""

from __future__ import annotations

from typing import Any


class AssessmentApiError(Exception):
    """Base exception for lifecycle errors surfaced to callers."""

    status_code = 500

    def __init__(self, message: str, **extra: Any) -> None:
        self.message = message
        self.extra = {key: value for key, value in extra.items() if value is not None}
        super().__init__(message)

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.message, **self.extra}


class InputValidationError(AssessmentApiError):
    """Malformed caller input; never reaches the state machine."""

    status_code = 400


class TaskNotFoundError(AssessmentApiError):
    status_code = 404

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__("Task not found", task_id=task_id)


class ConflictError(AssessmentApiError):
    """Idempotency collision or report work already in flight/done."""

    status_code = 409


class PreconditionFailedError(AssessmentApiError):
    """Operation requested at the wrong lifecycle stage."""

    status_code = 400


class ReportNotReadyError(AssessmentApiError):
    status_code = 404


class StaleTransitionError(AssessmentApiError):
    """Conditional update lost: another actor already advanced the record."""

    status_code = 409

    def __init__(self, task_id: str, field: str, expected: tuple[str, ...]) -> None:
        self.task_id = task_id
        self.field = field
        self.expected = expected
        super().__init__(
            f"Stale transition for task {task_id}: {field} no longer in {list(expected)}",
            task_id=task_id,
        )


class UpstreamFailure(AssessmentApiError):
    """AssessmentClient or ReportRenderer failed."""

    status_code = 502


class InternalError(AssessmentApiError):
    """Persistence or transport failure on the service's own operations."""

    status_code = 500
