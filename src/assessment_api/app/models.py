"""Pydantic models shared across API, lifecycle managers, and storage.

Beginner terms used in this file:
- Task: one questionnaire submission's assessment-and-report lifecycle record.
- Literal: restricts a field to a fixed set of allowed string values.
- Snapshot: the public view of a Task (never carries the report artifact).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

# Assessment sub-machine: PENDING -> PROCESSING -> COMPLETED | FAILED.
TaskStatus = Literal["PENDING", "PROCESSING", "COMPLETED", "FAILED"]
# Report sub-machine: NOT_STARTED -> GENERATING -> COMPLETED | FAILED.
ReportStatus = Literal["NOT_STARTED", "GENERATING", "COMPLETED", "FAILED"]
RiskSeverity = Literal["critical", "high", "medium", "low", "info"]

ACTIVE_TASK_STATUSES: tuple[TaskStatus, ...] = ("PENDING", "PROCESSING", "COMPLETED")


class RiskCounts(BaseModel):
    high: int = Field(ge=0)
    medium: int = Field(ge=0)
    low: int = Field(ge=0)


class DetectedRisk(BaseModel):
    """A risk already detected by the collecting agent for one answer."""

    severity: RiskSeverity
    description: str = ""


class SubmissionAnswer(BaseModel):
    question_code: str = ""
    question_text: str = ""
    answer_text: str | None = None
    answer_json: Any = None
    detected_risks: list[DetectedRisk] = Field(default_factory=list)


class SubmissionSection(BaseModel):
    section_key: str
    title: str
    answers: list[SubmissionAnswer] = Field(default_factory=list)


class Submission(BaseModel):
    """Read-only questionnaire content handed to the core."""

    submission_ref: str = Field(min_length=1)
    sections: list[SubmissionSection] = Field(min_length=1)


class AssessmentResult(BaseModel):
    """Structured result of one AssessmentClient call."""

    risk_counts: RiskCounts
    summary: str
    raw: dict[str, Any] = Field(default_factory=dict)


class Task(BaseModel):
    """Canonical persisted task record."""

    task_id: str
    submission_ref: str
    status: TaskStatus = "PENDING"
    # Populated by the assessment sub-machine.
    risk_counts: RiskCounts | None = None
    assessment_summary: str | None = None
    raw_assessment: dict[str, Any] | None = None
    error_message: str | None = None
    # Populated by the report sub-machine.
    report_status: ReportStatus = "NOT_STARTED"
    report_artifact: str | None = None
    # Start of the current GENERATING episode.
    report_started_at: datetime | None = None
    report_generated_at: datetime | None = None
    report_error: str | None = None
    # Written once by the payment gate.
    payment_ref: str | None = None
    payment_amount: float | None = None
    paid_at: datetime | None = None
    created_at: datetime
    processed_at: datetime | None = None

    def snapshot(self) -> TaskSnapshot:
        return TaskSnapshot.model_validate(self.model_dump(exclude={"report_artifact"}))


class TaskSnapshot(BaseModel):
    """Public view of a task returned by GET /tasks/{task_id}."""

    task_id: str
    submission_ref: str
    status: TaskStatus
    risk_counts: RiskCounts | None = None
    assessment_summary: str | None = None
    raw_assessment: dict[str, Any] | None = None
    error_message: str | None = None
    report_status: ReportStatus
    report_started_at: datetime | None = None
    report_generated_at: datetime | None = None
    report_error: str | None = None
    payment_ref: str | None = None
    payment_amount: float | None = None
    paid_at: datetime | None = None
    created_at: datetime
    processed_at: datetime | None = None


class ReportStatusView(BaseModel):
    """Response body for GET /tasks/{task_id}/report-status."""

    task_id: str
    report_status: ReportStatus
    report_generated_at: datetime | None = None
    report_error: str | None = None
    has_artifact: bool = False


class CreateTaskRequest(BaseModel):
    """Request body for POST /tasks."""

    submission: Submission


class TaskCreatedResponse(BaseModel):
    task_id: str
    status: TaskStatus
    message: str


class SubmitQuestionnaireResponse(BaseModel):
    """Response body for POST /questionnaires."""

    submission_ref: str
    asset_hash: str
    task: TaskCreatedResponse
    created: bool


class PaymentRequest(BaseModel):
    """Request body for POST /tasks/{task_id}/payment."""

    # Caller-supplied transaction reference (for example an on-chain tx hash).
    tx_hash: str = Field(min_length=1)
    amount: float


class PaymentResponse(BaseModel):
    task_id: str
    report_status: ReportStatus
    message: str


class GenerateReportResponse(BaseModel):
    """Response body for the manual POST /tasks/{task_id}/generate-report."""

    task_id: str
    report_status: ReportStatus
    report_length: int
    message: str


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class TaskListResponse(BaseModel):
    tasks: list[TaskSnapshot] = Field(default_factory=list)
    pagination: Pagination
