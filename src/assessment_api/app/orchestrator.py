"""Runs the AI assessment off the request path.

Each run converges the task to COMPLETED or FAILED exactly once. A run that
loses a conditional update to another actor discards its result.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future

from .assessment import AssessmentClient
from .errors import InternalError, StaleTransitionError
from .lifecycle import TaskLifecycleManager
from .models import Submission, TaskStatus
from .outcome import Err, call_with_timeout
from .workers import WorkerPool

logger = logging.getLogger(__name__)


class AssessmentOrchestrator:
    def __init__(
        self,
        *,
        lifecycle: TaskLifecycleManager,
        client: AssessmentClient,
        workers: WorkerPool,
        timeout_s: float = 60.0,
    ) -> None:
        self.lifecycle = lifecycle
        self.client = client
        self.workers = workers
        self.timeout_s = timeout_s

    def run_async(self, task_id: str, submission: Submission) -> Future[None]:
        """Schedule ``run`` on the worker pool; the caller does not wait."""
        try:
            return self.workers.submit(f"assessment:{task_id}", self.run, task_id, submission)
        except Exception as exc:
            logger.exception("assessment_run event=schedule_failed task_id=%s", task_id)
            self._fail_quietly(
                task_id, "Assessment could not be scheduled", from_status="PENDING"
            )
            raise InternalError("Assessment could not be scheduled", task_id=task_id) from exc

    def run(self, task_id: str, submission: Submission) -> None:
        try:
            self.lifecycle.transition_assessment(task_id, "PENDING", "PROCESSING")
        except StaleTransitionError:
            logger.info("assessment_run event=skipped task_id=%s reason=not_pending", task_id)
            return

        logger.info("assessment_run event=start task_id=%s", task_id)
        outcome = call_with_timeout(
            "assessment", self.client.assess, submission, timeout_s=self.timeout_s
        )
        try:
            if isinstance(outcome, Err):
                logger.warning(
                    "assessment_run event=failed task_id=%s kind=%s detail=%s",
                    task_id,
                    outcome.kind,
                    outcome.detail,
                )
                self.lifecycle.transition_assessment(
                    task_id, "PROCESSING", "FAILED", error_message=outcome.message()
                )
                return

            result = outcome.value
            self.lifecycle.transition_assessment(
                task_id, "PROCESSING", "COMPLETED", result=result
            )
            logger.info(
                "assessment_run event=completed task_id=%s high=%d medium=%d low=%d",
                task_id,
                result.risk_counts.high,
                result.risk_counts.medium,
                result.risk_counts.low,
            )
        except StaleTransitionError:
            logger.info("assessment_run event=discarded task_id=%s reason=stale", task_id)
        except Exception:
            # Last attempt to leave a terminal state behind before the worker exits.
            logger.exception("assessment_run event=persist_failed task_id=%s", task_id)
            self._fail_quietly(task_id, "Internal error while recording assessment result")
            raise

    def _fail_quietly(
        self, task_id: str, message: str, *, from_status: TaskStatus = "PROCESSING"
    ) -> None:
        try:
            self.lifecycle.transition_assessment(
                task_id, from_status, "FAILED", error_message=message
            )
        except Exception:  # noqa: BLE001
            logger.exception("assessment_run event=fail_write_failed task_id=%s", task_id)
