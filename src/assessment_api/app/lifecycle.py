"""Task creation, lookup, and the assessment state machine.

``transition_assessment`` is the only write path for the assessment status.
Allowed edges: PENDING -> PROCESSING, PROCESSING -> COMPLETED | FAILED, and
PENDING -> FAILED (used when a record is recovered after a restart).
"""

from __future__ import annotations

import logging
import math
import uuid
from datetime import UTC, datetime
from typing import Any

from .errors import ConflictError, InputValidationError, StaleTransitionError, TaskNotFoundError
from .models import AssessmentResult, Task, TaskStatus
from .storage.base import TaskStorage

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    "PENDING": frozenset({"PROCESSING", "FAILED"}),
    "PROCESSING": frozenset({"COMPLETED", "FAILED"}),
    "COMPLETED": frozenset(),
    "FAILED": frozenset(),
}

MAX_PAGE_SIZE = 100


class TaskLifecycleManager:
    def __init__(self, storage: TaskStorage) -> None:
        self.storage = storage

    def create_or_get(self, submission_ref: str, *, strict: bool = False) -> tuple[Task, bool]:
        """Create the task for ``submission_ref`` unless an active one exists.

        With ``strict=True`` an existing active task raises ``ConflictError``;
        otherwise it is returned with ``created=False``.
        """
        if not submission_ref or not submission_ref.strip():
            raise InputValidationError("submission_ref is required")
        candidate = Task(
            task_id=str(uuid.uuid4()),
            submission_ref=submission_ref,
            status="PENDING",
            report_status="NOT_STARTED",
            created_at=datetime.now(tz=UTC),
        )
        task, created = self.storage.insert_if_absent(candidate)
        if created:
            logger.info(
                "task_lifecycle event=created task_id=%s submission_ref=%s",
                task.task_id,
                submission_ref,
            )
        elif strict:
            raise ConflictError(
                "Task already exists for this submission",
                task_id=task.task_id,
            )
        else:
            logger.info(
                "task_lifecycle event=reused task_id=%s submission_ref=%s status=%s",
                task.task_id,
                submission_ref,
                task.status,
            )
        return task, created

    def get(self, task_id: str) -> Task:
        task = self.storage.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def get_by_submission(self, submission_ref: str) -> Task:
        task = self.storage.get_task_by_submission(submission_ref)
        if task is None:
            raise TaskNotFoundError(submission_ref)
        return task

    def list_tasks(
        self, *, page: int = 1, limit: int = 20, status: TaskStatus | None = None
    ) -> tuple[list[Task], dict[str, int]]:
        if page < 1:
            raise InputValidationError("page must be >= 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise InputValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        tasks, total = self.storage.list_tasks(
            status=status, offset=(page - 1) * limit, limit=limit
        )
        pagination = {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit),
        }
        return tasks, pagination

    def transition_assessment(
        self,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        *,
        result: AssessmentResult | None = None,
        error_message: str | None = None,
    ) -> None:
        """Compare-and-swap the assessment status; raise on a lost race."""
        if to_status not in _ALLOWED_TRANSITIONS[from_status]:
            raise ValueError(f"Illegal assessment transition {from_status} -> {to_status}")
        patch: dict[str, Any] = {"status": to_status}
        if to_status == "COMPLETED":
            if result is None:
                raise ValueError("COMPLETED transition requires an assessment result")
            patch.update(
                risk_counts=result.risk_counts,
                assessment_summary=result.summary,
                raw_assessment=result.raw,
                processed_at=datetime.now(tz=UTC),
            )
        elif to_status == "FAILED":
            patch.update(
                error_message=error_message or "Unknown error",
                processed_at=datetime.now(tz=UTC),
            )

        applied = self.storage.conditional_update(
            task_id, field="status", expected=from_status, patch=patch
        )
        if not applied:
            if self.storage.get_task(task_id) is None:
                raise TaskNotFoundError(task_id)
            raise StaleTransitionError(task_id, "status", (from_status,))
        logger.info(
            "task_lifecycle event=transition task_id=%s from=%s to=%s",
            task_id,
            from_status,
            to_status,
        )
