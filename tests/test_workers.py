from __future__ import annotations

import threading

from assessment_api.app.workers import WorkerPool


def test_join_waits_for_inflight_jobs() -> None:
    pool = WorkerPool(max_workers=2)
    release = threading.Event()
    futures = [pool.submit(f"job-{index}", release.wait, 5.0) for index in range(3)]

    assert pool.join(timeout=0.05) is False
    release.set()
    assert pool.join(timeout=5.0) is True
    assert all(future.done() for future in futures)
    pool.shutdown()


def test_crashed_job_is_logged_and_surfaced_on_future(caplog) -> None:
    pool = WorkerPool(max_workers=1)

    def boom() -> None:
        raise RuntimeError("boom")

    future = pool.submit("crashy", boom)
    assert pool.join(timeout=5.0) is True

    assert isinstance(future.exception(), RuntimeError)
    assert "event=job_crashed job=crashy" in caplog.text
    pool.shutdown()
