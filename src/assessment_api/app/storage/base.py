"""Storage interface for the task lifecycle.

The two atomic primitives below are the only concurrency control the
lifecycle managers rely on:

- ``insert_if_absent``: insert unless an active (non-FAILED) task already
  exists for the same submission reference; existence check and insert are a
  single operation.
- ``conditional_update``: apply ``patch`` only if ``field`` currently holds
  one of ``expected`` (compare-and-swap on status). Fields named in
  ``require_null`` must also still be unset, which keeps write-once fields
  such as the payment reference from being overwritten.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Literal, Protocol

from assessment_api.app.models import Task, TaskStatus

GuardField = Literal["status", "report_status"]

# Task fields a patch may write; mirrors the persisted record layout.
PATCHABLE_FIELDS = frozenset(
    {
        "status",
        "risk_counts",
        "assessment_summary",
        "raw_assessment",
        "error_message",
        "processed_at",
        "report_status",
        "report_artifact",
        "report_started_at",
        "report_generated_at",
        "report_error",
        "payment_ref",
        "payment_amount",
        "paid_at",
    }
)


class TaskStorage(Protocol):
    def migrate(self) -> None: ...

    def insert_if_absent(self, record: Task) -> tuple[Task, bool]: ...

    def get_task(self, task_id: str) -> Task | None: ...

    def get_task_by_submission(self, submission_ref: str) -> Task | None: ...

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Task], int]: ...

    def conditional_update(
        self,
        task_id: str,
        *,
        field: GuardField,
        expected: str | Iterable[str],
        patch: dict[str, Any],
        require_null: Iterable[str] = (),
    ) -> bool: ...


def normalize_expected(expected: str | Iterable[str]) -> tuple[str, ...]:
    if isinstance(expected, str):
        return (expected,)
    values = tuple(expected)
    if not values:
        raise ValueError("expected must name at least one value")
    return values


def validate_patch(
    field: str, patch: dict[str, Any], require_null: Iterable[str] = ()
) -> None:
    if field not in ("status", "report_status"):
        raise ValueError(f"Unsupported guard field: {field}")
    unknown = (set(patch) | set(require_null)) - PATCHABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported patch fields: {sorted(unknown)}")
