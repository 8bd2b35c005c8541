from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from assessment_api.app.models import Task
from assessment_api.app.storage.memory import InMemoryTaskStorage


def _task(task_id: str, submission_ref: str = "S1", *, minutes: int = 0, **fields) -> Task:
    return Task(
        task_id=task_id,
        submission_ref=submission_ref,
        created_at=datetime(2026, 1, 1, tzinfo=UTC) + timedelta(minutes=minutes),
        **fields,
    )


def test_insert_if_absent_returns_existing_active_task() -> None:
    storage = InMemoryTaskStorage()
    first, created_first = storage.insert_if_absent(_task("t1"))
    second, created_second = storage.insert_if_absent(_task("t2"))

    assert created_first is True
    assert created_second is False
    assert second.task_id == first.task_id == "t1"
    assert storage.get_task("t2") is None


def test_insert_if_absent_allows_new_task_after_failure() -> None:
    storage = InMemoryTaskStorage()
    storage.insert_if_absent(_task("t1", status="FAILED"))

    task, created = storage.insert_if_absent(_task("t2", minutes=1))

    assert created is True
    assert task.task_id == "t2"
    assert storage.get_task_by_submission("S1").task_id == "t2"


def test_get_task_by_submission_falls_back_to_latest_failed() -> None:
    storage = InMemoryTaskStorage()
    storage.insert_if_absent(_task("t1", status="FAILED"))
    storage.insert_if_absent(_task("t2", status="FAILED", minutes=5))

    assert storage.get_task_by_submission("S1").task_id == "t2"
    assert storage.get_task_by_submission("missing") is None


def test_conditional_update_applies_only_on_expected_value() -> None:
    storage = InMemoryTaskStorage()
    storage.insert_if_absent(_task("t1"))

    assert storage.conditional_update(
        "t1", field="status", expected="PENDING", patch={"status": "PROCESSING"}
    )
    assert not storage.conditional_update(
        "t1", field="status", expected="PENDING", patch={"status": "FAILED"}
    )
    assert not storage.conditional_update(
        "missing", field="status", expected="PENDING", patch={"status": "PROCESSING"}
    )
    assert storage.get_task("t1").status == "PROCESSING"


def test_conditional_update_accepts_several_expected_values() -> None:
    storage = InMemoryTaskStorage()
    storage.insert_if_absent(_task("t1", status="COMPLETED", report_status="FAILED"))

    applied = storage.conditional_update(
        "t1",
        field="report_status",
        expected=("NOT_STARTED", "FAILED"),
        patch={"report_status": "GENERATING", "report_error": None},
    )

    assert applied is True
    assert storage.get_task("t1").report_status == "GENERATING"


def test_conditional_update_rejects_unknown_patch_fields() -> None:
    storage = InMemoryTaskStorage()
    storage.insert_if_absent(_task("t1"))

    with pytest.raises(ValueError):
        storage.conditional_update(
            "t1", field="status", expected="PENDING", patch={"submission_ref": "other"}
        )


def test_reads_return_copies() -> None:
    storage = InMemoryTaskStorage()
    storage.insert_if_absent(_task("t1"))

    fetched = storage.get_task("t1")
    fetched.status = "FAILED"

    assert storage.get_task("t1").status == "PENDING"


def test_list_tasks_filters_and_pages_newest_first() -> None:
    storage = InMemoryTaskStorage()
    for index in range(5):
        storage.insert_if_absent(_task(f"t{index}", f"S{index}", minutes=index))
    storage.conditional_update("t0", field="status", expected="PENDING", patch={"status": "FAILED"})

    page, total = storage.list_tasks(offset=0, limit=2)
    assert total == 5
    assert [task.task_id for task in page] == ["t4", "t3"]

    failed, failed_total = storage.list_tasks(status="FAILED")
    assert failed_total == 1
    assert failed[0].task_id == "t0"


def test_conditional_update_honours_write_once_fields() -> None:
    storage = InMemoryTaskStorage()
    storage.insert_if_absent(_task("t1", status="COMPLETED"))
    guard = {"field": "report_status", "expected": ("NOT_STARTED", "FAILED")}

    assert storage.conditional_update(
        "t1",
        **guard,
        patch={"report_status": "FAILED", "payment_ref": "0xA", "payment_amount": 100},
        require_null=("payment_ref",),
    )
    assert not storage.conditional_update(
        "t1",
        **guard,
        patch={"report_status": "GENERATING", "payment_ref": "0xB", "payment_amount": 7},
        require_null=("payment_ref",),
    )

    stored = storage.get_task("t1")
    assert stored.report_status == "FAILED"
    assert (stored.payment_ref, stored.payment_amount) == ("0xA", 100)


def test_conditional_update_rejects_unknown_write_once_fields() -> None:
    storage = InMemoryTaskStorage()
    storage.insert_if_absent(_task("t1"))

    with pytest.raises(ValueError):
        storage.conditional_update(
            "t1",
            field="status",
            expected="PENDING",
            patch={"status": "PROCESSING"},
            require_null=("task_id",),
        )
