"""Payment gate: the hand-off from "assessed" to "report requested".

The core records the caller-supplied transaction reference as provided; it
does not verify on-chain settlement.
"""

from __future__ import annotations

import logging
import math
from datetime import UTC, datetime
from typing import Any

from .errors import ConflictError, InputValidationError, PreconditionFailedError, TaskNotFoundError
from .lifecycle import TaskLifecycleManager
from .models import ReportStatus
from .reports import STARTABLE_REPORT_STATUSES, ReportLifecycleManager

logger = logging.getLogger(__name__)


class PaymentGate:
    def __init__(self, *, lifecycle: TaskLifecycleManager, reports: ReportLifecycleManager) -> None:
        self.lifecycle = lifecycle
        self.reports = reports

    def authorize(self, task_id: str, payment_ref: str, amount: float) -> ReportStatus:
        if not payment_ref or not payment_ref.strip():
            raise InputValidationError("txHash is required")
        if not math.isfinite(amount) or amount <= 0:
            raise InputValidationError("Valid amount is required")

        task = self.lifecycle.get(task_id)
        if task.status != "COMPLETED":
            raise PreconditionFailedError(
                "Task assessment must be completed before payment",
                task_id=task_id,
                status=task.status,
            )
        if task.report_status == "COMPLETED":
            raise ConflictError(
                "Report already generated", task_id=task_id, report_status=task.report_status
            )
        if task.report_status == "GENERATING":
            raise ConflictError(
                "Report is already being generated",
                task_id=task_id,
                report_status=task.report_status,
            )

        now = datetime.now(tz=UTC)
        patch: dict[str, Any] = {
            "report_status": "GENERATING",
            "report_error": None,
            "report_started_at": now,
        }
        applied = False
        recorded = False
        if task.payment_ref is None:
            # Payment fields are write-once: the guard re-checks them in the same update.
            applied = recorded = self.lifecycle.storage.conditional_update(
                task_id,
                field="report_status",
                expected=STARTABLE_REPORT_STATUSES,
                patch={
                    **patch,
                    "payment_ref": payment_ref,
                    "payment_amount": amount,
                    "paid_at": now,
                },
                require_null=("payment_ref",),
            )
        if not applied:
            # A payment is already on record; start the episode and keep it.
            applied = self.lifecycle.storage.conditional_update(
                task_id,
                field="report_status",
                expected=STARTABLE_REPORT_STATUSES,
                patch=patch,
            )
        if not applied:
            current = self.lifecycle.storage.get_task(task_id)
            if current is None:
                raise TaskNotFoundError(task_id)
            raise ConflictError(
                "Report is already being generated",
                task_id=task_id,
                report_status=current.report_status,
            )

        logger.info(
            "payment_gate event=authorized task_id=%s payment_ref=%s amount=%s recorded=%s",
            task_id,
            payment_ref,
            amount,
            recorded,
        )
        self.reports.start_async(task_id)
        return "GENERATING"
