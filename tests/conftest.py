from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from assessment_api.app.models import (
    AssessmentResult,
    DetectedRisk,
    RiskCounts,
    Submission,
    SubmissionAnswer,
    SubmissionSection,
    Task,
)
from assessment_api.app.storage.memory import InMemoryTaskStorage
from assessment_api.config.settings import Settings
from assessment_api.main import Services, build_services, create_app


class StubAssessmentClient:
    """Test double for AssessmentClient with optional delay, gate, and failure."""

    def __init__(
        self,
        result: AssessmentResult | None = None,
        *,
        error: Exception | None = None,
        delay_s: float = 0.0,
    ) -> None:
        self.result = result or AssessmentResult(
            risk_counts=RiskCounts(high=2, medium=3, low=5),
            summary="Several gaps in access control and patching.",
            raw={"highRiskCount": 2, "mediumRiskCount": 3, "lowRiskCount": 5, "risks": []},
        )
        self.error = error
        self.delay_s = delay_s
        self.calls: list[str] = []
        self.gate: threading.Event | None = None

    def assess(self, submission: Submission) -> AssessmentResult:
        self.calls.append(submission.submission_ref)
        if self.gate is not None:
            self.gate.wait(timeout=5.0)
        if self.delay_s:
            time.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return self.result


class StubRenderer:
    """Test double for ReportRenderer."""

    def __init__(
        self,
        *,
        artifact: str = "<html><body>report</body></html>",
        error: Exception | None = None,
        delay_s: float = 0.0,
    ) -> None:
        self.artifact = artifact
        self.error = error
        self.delay_s = delay_s
        self.calls: list[str] = []

    def render(self, task: Task) -> str:
        self.calls.append(task.task_id)
        if self.delay_s:
            time.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return self.artifact


class RecordingStorage(InMemoryTaskStorage):
    """In-memory storage that records every applied status change per task."""

    def __init__(self) -> None:
        super().__init__()
        self.status_trace: dict[str, list[str]] = {}
        self.report_trace: dict[str, list[str]] = {}

    def insert_if_absent(self, record: Task) -> tuple[Task, bool]:
        task, created = super().insert_if_absent(record)
        if created:
            self.status_trace[task.task_id] = [task.status]
            self.report_trace[task.task_id] = [task.report_status]
        return task, created

    def conditional_update(
        self, task_id: str, *, field: Any, expected: Any, patch: Any, require_null: Any = ()
    ) -> bool:
        applied = super().conditional_update(
            task_id, field=field, expected=expected, patch=patch, require_null=require_null
        )
        if applied:
            if "status" in patch:
                self.status_trace.setdefault(task_id, []).append(patch["status"])
            if "report_status" in patch:
                self.report_trace.setdefault(task_id, []).append(patch["report_status"])
        return applied


def build_submission(
    submission_ref: str = "S1",
    *,
    answer_text: str = "We rotate credentials yearly.",
    risks: tuple[str, ...] = (),
) -> Submission:
    return Submission(
        submission_ref=submission_ref,
        sections=[
            SubmissionSection(
                section_key="identity",
                title="Identity & Access",
                answers=[
                    SubmissionAnswer(
                        question_code="IAM-01",
                        question_text="How often are credentials rotated?",
                        answer_text=answer_text,
                        detected_risks=[
                            DetectedRisk(severity=severity, description=f"{severity} finding")
                            for severity in risks
                        ],
                    )
                ],
            )
        ],
    )


@pytest.fixture
def make_submission() -> Callable[..., Submission]:
    return build_submission


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="",
        assessment_mode="heuristic",
        report_mode="template",
        assessment_timeout_s=2.0,
        report_timeout_s=2.0,
        worker_count=4,
    )


@pytest.fixture
def storage() -> RecordingStorage:
    return RecordingStorage()


@pytest.fixture
def assessment_client() -> StubAssessmentClient:
    return StubAssessmentClient()


@pytest.fixture
def renderer() -> StubRenderer:
    return StubRenderer()


@pytest.fixture
def services(
    settings: Settings,
    storage: RecordingStorage,
    assessment_client: StubAssessmentClient,
    renderer: StubRenderer,
) -> Iterator[Services]:
    built = build_services(
        settings,
        storage=storage,
        assessment_client=assessment_client,
        renderer=renderer,
    )
    yield built
    built.workers.join(timeout=5.0)
    built.workers.shutdown()


@pytest.fixture
def completed_task(services: Services, make_submission: Callable[..., Submission]) -> Task:
    """A task whose assessment already reached COMPLETED."""
    submission = make_submission("S-completed")
    task, _ = services.lifecycle.create_or_get(submission.submission_ref)
    services.orchestrator.run(task.task_id, submission)
    return services.lifecycle.get(task.task_id)


@pytest.fixture
def client(
    settings: Settings,
    storage: RecordingStorage,
    assessment_client: StubAssessmentClient,
    renderer: StubRenderer,
) -> Iterator[TestClient]:
    app = create_app(
        storage=storage,
        settings_override=settings,
        assessment_client=assessment_client,
        renderer=renderer,
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def drain() -> Callable[[Any], None]:
    """Wait for all background jobs of a TestClient's app or a Services bundle."""

    def _drain(target: Any) -> None:
        services = target.app.state.services if isinstance(target, TestClient) else target
        assert services.workers.join(timeout=5.0), "background jobs did not finish"

    return _drain


@pytest.fixture
def make_client() -> type[StubAssessmentClient]:
    return StubAssessmentClient


@pytest.fixture
def make_renderer() -> type[StubRenderer]:
    return StubRenderer
