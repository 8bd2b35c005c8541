from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any

import pytest

from assessment_api.app.errors import InternalError
from assessment_api.app.models import Submission
from assessment_api.app.orchestrator import AssessmentOrchestrator
from assessment_api.app.outcome import MalformedResponseError
from assessment_api.main import Services

SubmissionFactory = Callable[..., Submission]


def _orchestrator(services: Services, client: Any, timeout_s: float = 2.0) -> AssessmentOrchestrator:
    return AssessmentOrchestrator(
        lifecycle=services.lifecycle,
        client=client,
        workers=services.workers,
        timeout_s=timeout_s,
    )


def test_run_completes_with_result(
    services: Services, storage: Any, make_submission: SubmissionFactory
) -> None:
    task, _ = services.lifecycle.create_or_get("S1")

    services.orchestrator.run(task.task_id, make_submission("S1"))

    stored = services.lifecycle.get(task.task_id)
    assert stored.status == "COMPLETED"
    assert (stored.risk_counts.high, stored.risk_counts.medium, stored.risk_counts.low) == (2, 3, 5)
    assert stored.assessment_summary == "Several gaps in access control and patching."
    assert stored.report_status == "NOT_STARTED"
    assert storage.status_trace[task.task_id] == ["PENDING", "PROCESSING", "COMPLETED"]


def test_malformed_reply_fails_task(
    services: Services,
    storage: Any,
    make_client: Any,
    make_submission: SubmissionFactory,
) -> None:
    client = make_client(error=MalformedResponseError("Failed to parse AI response as JSON"))
    task, _ = services.lifecycle.create_or_get("S1")

    _orchestrator(services, client).run(task.task_id, make_submission("S1"))

    stored = services.lifecycle.get(task.task_id)
    assert stored.status == "FAILED"
    assert stored.error_message == "malformed: Failed to parse AI response as JSON"
    assert stored.risk_counts is None
    assert storage.status_trace[task.task_id] == ["PENDING", "PROCESSING", "FAILED"]


def test_transport_error_fails_task(
    services: Services, make_client: Any, make_submission: SubmissionFactory
) -> None:
    client = make_client(error=ConnectionError("upstream unreachable"))
    task, _ = services.lifecycle.create_or_get("S1")

    _orchestrator(services, client).run(task.task_id, make_submission("S1"))

    stored = services.lifecycle.get(task.task_id)
    assert stored.status == "FAILED"
    assert stored.error_message == "transport: upstream unreachable"


def test_slow_client_times_out(
    services: Services, make_client: Any, make_submission: SubmissionFactory
) -> None:
    client = make_client()
    client.gate = threading.Event()
    task, _ = services.lifecycle.create_or_get("S1")

    _orchestrator(services, client, timeout_s=0.1).run(task.task_id, make_submission("S1"))
    client.gate.set()

    stored = services.lifecycle.get(task.task_id)
    assert stored.status == "FAILED"
    assert stored.error_message.startswith("timeout: ")


def test_second_run_for_same_task_is_skipped(
    services: Services,
    storage: Any,
    assessment_client: Any,
    make_submission: SubmissionFactory,
) -> None:
    submission = make_submission("S1")
    task, _ = services.lifecycle.create_or_get("S1")

    services.orchestrator.run(task.task_id, submission)
    services.orchestrator.run(task.task_id, submission)

    assert assessment_client.calls == ["S1"]
    assert storage.status_trace[task.task_id] == ["PENDING", "PROCESSING", "COMPLETED"]


def test_result_is_discarded_when_task_was_already_finalized(
    services: Services,
    storage: Any,
    make_client: Any,
    make_submission: SubmissionFactory,
) -> None:
    client = make_client()
    client.gate = threading.Event()
    task, _ = services.lifecycle.create_or_get("S1")

    future = _orchestrator(services, client).run_async(task.task_id, make_submission("S1"))
    deadline = time.monotonic() + 5.0
    while storage.get_task(task.task_id).status != "PROCESSING" and time.monotonic() < deadline:
        time.sleep(0.01)
    services.lifecycle.transition_assessment(
        task.task_id, "PROCESSING", "FAILED", error_message="interrupted before completion"
    )
    client.gate.set()
    future.result(timeout=5.0)

    stored = services.lifecycle.get(task.task_id)
    assert stored.status == "FAILED"
    assert stored.error_message == "interrupted before completion"
    assert storage.status_trace[task.task_id] == ["PENDING", "PROCESSING", "FAILED"]


def test_run_async_returns_handle(services: Services, make_submission: SubmissionFactory) -> None:
    task, _ = services.lifecycle.create_or_get("S1")

    future = services.orchestrator.run_async(task.task_id, make_submission("S1"))
    future.result(timeout=5.0)

    assert services.lifecycle.get(task.task_id).status == "COMPLETED"


def test_assessment_that_cannot_be_scheduled_is_failed(
    services: Services, assessment_client: Any, make_submission: SubmissionFactory
) -> None:
    submission = make_submission("S-unscheduled")
    task, _ = services.lifecycle.create_or_get(submission.submission_ref)
    services.workers.shutdown()

    with pytest.raises(InternalError, match="could not be scheduled"):
        services.orchestrator.run_async(task.task_id, submission)

    stored = services.lifecycle.get(task.task_id)
    assert stored.status == "FAILED"
    assert stored.error_message == "Assessment could not be scheduled"
    assert assessment_client.calls == []
