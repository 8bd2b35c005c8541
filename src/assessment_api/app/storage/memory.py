"""In-memory storage backend for tests and local runs."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from typing import Any

from assessment_api.app.models import Task, TaskStatus
from assessment_api.app.storage.base import GuardField, normalize_expected, validate_patch


class InMemoryTaskStorage:
    """Process-local implementation; one lock makes every primitive atomic."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._lock = threading.Lock()

    def migrate(self) -> None:
        return None

    def insert_if_absent(self, record: Task) -> tuple[Task, bool]:
        with self._lock:
            for existing in self._tasks.values():
                if existing.submission_ref == record.submission_ref and existing.status != "FAILED":
                    return existing.model_copy(deep=True), False
            self._tasks[record.task_id] = record.model_copy(deep=True)
            return record.model_copy(deep=True), True

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def get_task_by_submission(self, submission_ref: str) -> Task | None:
        with self._lock:
            matches = [
                task for task in self._tasks.values() if task.submission_ref == submission_ref
            ]
        if not matches:
            return None
        # Prefer the active task; otherwise the most recent failed one.
        matches.sort(key=lambda task: (task.status != "FAILED", task.created_at), reverse=True)
        return matches[0].model_copy(deep=True)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Task], int]:
        with self._lock:
            selected = [
                task for task in self._tasks.values() if status is None or task.status == status
            ]
        selected.sort(key=lambda task: task.created_at, reverse=True)
        page = selected[offset : offset + limit]
        return [task.model_copy(deep=True) for task in page], len(selected)

    def conditional_update(
        self,
        task_id: str,
        *,
        field: GuardField,
        expected: str | Iterable[str],
        patch: dict[str, Any],
        require_null: Iterable[str] = (),
    ) -> bool:
        expected_values = normalize_expected(expected)
        require_null = tuple(require_null)
        validate_patch(field, patch, require_null)
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None or getattr(current, field) not in expected_values:
                return False
            if any(getattr(current, name) is not None for name in require_null):
                return False
            merged = current.model_dump()
            merged.update(patch)
            self._tasks[task_id] = Task.model_validate(merged)
            return True
