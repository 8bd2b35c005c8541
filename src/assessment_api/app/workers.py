"""Background worker pool for assessment and report jobs.

Request handlers submit a job and return immediately. Every job returns a
``Future`` handle; jobs are expected to record their own terminal outcome on
the task record before exiting, and anything that still escapes is logged here.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any

logger = logging.getLogger(__name__)


class WorkerPool:
    def __init__(self, *, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="assessment-worker"
        )
        self._inflight: set[Future[Any]] = set()
        self._lock = threading.Lock()

    def submit(self, name: str, fn: Callable[..., Any], *args: Any) -> Future[Any]:
        future = self._executor.submit(fn, *args)
        with self._lock:
            self._inflight.add(future)
        future.add_done_callback(lambda done: self._on_done(name, done))
        logger.info("worker_pool event=submitted job=%s", name)
        return future

    def join(self, timeout: float | None = None) -> bool:
        """Wait until no job is in flight. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = set(self._inflight)
            if not pending:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            wait(pending, timeout=remaining)

    def shutdown(self, *, wait_for_jobs: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_jobs)

    def _on_done(self, name: str, future: Future[Any]) -> None:
        try:
            if future.cancelled():
                logger.warning("worker_pool event=cancelled job=%s", name)
                return
            exc = future.exception()
            if exc is not None:
                logger.error(
                    "worker_pool event=job_crashed job=%s reason=%r",
                    name,
                    exc,
                    exc_info=(type(exc), exc, exc.__traceback__),
                )
        finally:
            # Released last so join() returns only after logging is done.
            with self._lock:
                self._inflight.discard(future)
