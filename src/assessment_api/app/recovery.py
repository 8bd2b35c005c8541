"""Sweep for records a dead process left in flight.

Submission content is not persisted, so an interrupted assessment cannot be
resumed; it is failed instead, which lets the submitter create a new task.
Each write goes through the same conditional update as normal transitions,
so a record another actor already finished is left alone.

Several processes may share one database, so only records older than the
hard timeout bound (plus a grace period) are touched: a live worker always
finishes its own record before then.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime, timedelta

from .errors import StaleTransitionError
from .lifecycle import TaskLifecycleManager
from .models import Task, TaskStatus

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "interrupted before completion"
_BATCH_SIZE = 100


def recover_interrupted_tasks(
    lifecycle: TaskLifecycleManager,
    *,
    assessment_stale_after_s: float = 0.0,
    report_stale_after_s: float = 0.0,
    now: datetime | None = None,
) -> dict[str, int]:
    now = now or datetime.now(tz=UTC)
    assessment_cutoff = now - timedelta(seconds=assessment_stale_after_s)
    report_cutoff = now - timedelta(seconds=report_stale_after_s)
    recovered = {"assessments": 0, "reports": 0}

    for status in ("PENDING", "PROCESSING"):
        for task in _all_tasks(lifecycle, status):
            if task.created_at > assessment_cutoff:
                continue
            try:
                lifecycle.transition_assessment(
                    task.task_id, status, "FAILED", error_message=INTERRUPTED_MESSAGE
                )
            except StaleTransitionError:
                continue
            recovered["assessments"] += 1

    for task in _all_tasks(lifecycle, "COMPLETED"):
        if task.report_status != "GENERATING":
            continue
        # Records written before report_started_at existed count as stale.
        if task.report_started_at is not None and task.report_started_at > report_cutoff:
            continue
        if lifecycle.storage.conditional_update(
            task.task_id,
            field="report_status",
            expected="GENERATING",
            patch={"report_status": "FAILED", "report_error": INTERRUPTED_MESSAGE},
        ):
            recovered["reports"] += 1

    if recovered["assessments"] or recovered["reports"]:
        logger.warning(
            "recovery event=completed assessments=%d reports=%d",
            recovered["assessments"],
            recovered["reports"],
        )
    return recovered


def _all_tasks(lifecycle: TaskLifecycleManager, status: TaskStatus) -> list[Task]:
    # Collect first: failing records while paging by status would shift the pages.
    collected: list[Task] = []
    offset = 0
    while True:
        page, total = lifecycle.storage.list_tasks(status=status, offset=offset, limit=_BATCH_SIZE)
        collected.extend(page)
        offset += len(page)
        if not page or offset >= total:
            return collected


class RecoverySweeper:
    """Runs ``recover_interrupted_tasks`` at startup and then every ``interval_s``."""

    def __init__(
        self,
        lifecycle: TaskLifecycleManager,
        *,
        assessment_stale_after_s: float,
        report_stale_after_s: float,
        interval_s: float,
    ) -> None:
        self.lifecycle = lifecycle
        self.assessment_stale_after_s = assessment_stale_after_s
        self.report_stale_after_s = report_stale_after_s
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def sweep(self) -> dict[str, int]:
        return recover_interrupted_tasks(
            self.lifecycle,
            assessment_stale_after_s=self.assessment_stale_after_s,
            report_stale_after_s=self.report_stale_after_s,
        )

    def start(self) -> None:
        self.sweep()
        if self.interval_s <= 0:
            return
        self._thread = threading.Thread(
            target=self._loop, name="recovery-sweeper", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.sweep()
            except Exception:  # noqa: BLE001
                logger.exception("recovery event=sweep_failed")
