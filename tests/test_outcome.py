from __future__ import annotations

import threading
import time

from assessment_api.app.outcome import Err, MalformedResponseError, Ok, call_with_timeout


def test_call_with_timeout_returns_value() -> None:
    assert call_with_timeout("sum", sum, [1, 2, 3], timeout_s=1.0) == Ok(6)


def test_call_with_timeout_bounds_slow_calls() -> None:
    release = threading.Event()

    def slow() -> str:
        release.wait(timeout=5.0)
        return "late"

    started = time.monotonic()
    outcome = call_with_timeout("slow", slow, timeout_s=0.1)
    elapsed = time.monotonic() - started
    release.set()

    assert isinstance(outcome, Err)
    assert outcome.kind == "timeout"
    assert outcome.message() == "timeout: slow timed out after 0.10s"
    assert elapsed < 1.0


def test_call_with_timeout_classifies_malformed_replies() -> None:
    def bad() -> None:
        raise MalformedResponseError("no JSON object")

    assert call_with_timeout("bad", bad, timeout_s=1.0) == Err("malformed", "no JSON object")


def test_call_with_timeout_classifies_transport_failures() -> None:
    def broken() -> None:
        raise ConnectionError("connection refused")

    outcome = call_with_timeout("broken", broken, timeout_s=1.0)
    assert outcome == Err("transport", "connection refused")


def test_err_message_without_detail() -> None:
    assert Err("transport", "").message() == "transport"
