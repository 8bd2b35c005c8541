"""Report sub-machine: NOT_STARTED -> GENERATING -> COMPLETED | FAILED.

Only two callers may move a report into GENERATING: the payment gate and the
manual ``generate-report`` override. Both terminal writes are conditioned on
``report_status == GENERATING`` so a finished episode never clobbers another.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from datetime import UTC, datetime

from .errors import (
    ConflictError,
    InternalError,
    PreconditionFailedError,
    ReportNotReadyError,
    TaskNotFoundError,
    UpstreamFailure,
)
from .lifecycle import TaskLifecycleManager
from .models import ReportStatus, ReportStatusView, Task
from .outcome import Err, Ok, call_with_timeout
from .renderer import ReportRenderer
from .workers import WorkerPool

logger = logging.getLogger(__name__)

# Report states a new GENERATING episode may start from.
STARTABLE_REPORT_STATUSES: tuple[ReportStatus, ...] = ("NOT_STARTED", "FAILED")


class ReportLifecycleManager:
    def __init__(
        self,
        *,
        lifecycle: TaskLifecycleManager,
        renderer: ReportRenderer,
        workers: WorkerPool,
        timeout_s: float = 120.0,
    ) -> None:
        self.lifecycle = lifecycle
        self.storage = lifecycle.storage
        self.renderer = renderer
        self.workers = workers
        self.timeout_s = timeout_s

    def start_async(self, task_id: str) -> Future[ReportStatus]:
        """Render in the background; the record must already be GENERATING."""
        try:
            return self.workers.submit(f"report:{task_id}", self.run, task_id)
        except Exception as exc:
            logger.exception("report_run event=schedule_failed task_id=%s", task_id)
            self._fail_quietly(task_id, "Report generation could not be scheduled")
            raise InternalError(
                "Report generation could not be scheduled", task_id=task_id
            ) from exc

    def run(self, task_id: str) -> ReportStatus:
        """Render once and record the terminal report status."""
        try:
            task = self.lifecycle.get(task_id)
        except TaskNotFoundError:
            raise
        except Exception:
            logger.exception("report_run event=load_failed task_id=%s", task_id)
            self._fail_quietly(task_id, "Internal error while loading task for report")
            raise
        if task.report_status != "GENERATING":
            logger.info(
                "report_run event=skipped task_id=%s report_status=%s",
                task_id,
                task.report_status,
            )
            return task.report_status

        logger.info("report_run event=start task_id=%s", task_id)
        outcome = call_with_timeout("report", self.renderer.render, task, timeout_s=self.timeout_s)
        try:
            return self._record_outcome(task_id, outcome)
        except Exception:
            # Last attempt to leave a terminal state behind before the worker exits.
            logger.exception("report_run event=persist_failed task_id=%s", task_id)
            self._fail_quietly(task_id, "Internal error while recording report result")
            raise

    def _record_outcome(self, task_id: str, outcome: Ok[str] | Err) -> ReportStatus:
        if isinstance(outcome, Err):
            logger.warning(
                "report_run event=failed task_id=%s kind=%s detail=%s",
                task_id,
                outcome.kind,
                outcome.detail,
            )
            applied = self.storage.conditional_update(
                task_id,
                field="report_status",
                expected="GENERATING",
                patch={"report_status": "FAILED", "report_error": outcome.message()},
            )
            final: ReportStatus = "FAILED"
        else:
            applied = self.storage.conditional_update(
                task_id,
                field="report_status",
                expected="GENERATING",
                patch={
                    "report_status": "COMPLETED",
                    "report_artifact": outcome.value,
                    "report_generated_at": datetime.now(tz=UTC),
                    "report_error": None,
                },
            )
            final = "COMPLETED"
        if not applied:
            logger.info("report_run event=discarded task_id=%s reason=stale", task_id)
            return self.lifecycle.get(task_id).report_status
        logger.info("report_run event=%s task_id=%s", final.lower(), task_id)
        return final

    def _fail_quietly(self, task_id: str, message: str) -> None:
        try:
            self.storage.conditional_update(
                task_id,
                field="report_status",
                expected="GENERATING",
                patch={"report_status": "FAILED", "report_error": message},
            )
        except Exception:  # noqa: BLE001
            logger.exception("report_run event=fail_write_failed task_id=%s", task_id)

    def get_status(self, task_id: str) -> ReportStatusView:
        task = self.lifecycle.get(task_id)
        return ReportStatusView(
            task_id=task.task_id,
            report_status=task.report_status,
            report_generated_at=task.report_generated_at,
            report_error=task.report_error,
            has_artifact=task.report_status == "COMPLETED" and bool(task.report_artifact),
        )

    def fetch_artifact(self, task_id: str) -> str:
        task = self.lifecycle.get(task_id)
        if task.report_status != "COMPLETED" or not task.report_artifact:
            raise ReportNotReadyError(
                "Report not available",
                report_status=task.report_status,
                report_error=task.report_error,
            )
        return task.report_artifact

    def generate_now(self, task_id: str) -> Task:
        """Manual override: render synchronously without checking payment.

        This is an operations/testing capability, authorized outside this
        service. It still requires a completed assessment and refuses to start
        while another episode is GENERATING.
        """
        task = self.lifecycle.get(task_id)
        if task.status != "COMPLETED":
            raise PreconditionFailedError(
                "Task assessment must be completed before generating report",
                task_id=task_id,
            )
        applied = self.storage.conditional_update(
            task_id,
            field="report_status",
            expected=(*STARTABLE_REPORT_STATUSES, "COMPLETED"),
            patch={
                "report_status": "GENERATING",
                "report_error": None,
                "report_started_at": datetime.now(tz=UTC),
            },
        )
        if not applied:
            if self.storage.get_task(task_id) is None:
                raise TaskNotFoundError(task_id)
            raise ConflictError(
                "Report is already being generated",
                task_id=task_id,
                report_status="GENERATING",
            )
        logger.info("report_run event=manual_trigger task_id=%s", task_id)
        final = self.run(task_id)
        refreshed = self.lifecycle.get(task_id)
        if final == "FAILED":
            raise UpstreamFailure(
                "Report generation failed",
                task_id=task_id,
                report_status=final,
                report_error=refreshed.report_error,
            )
        return refreshed
