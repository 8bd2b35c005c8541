"""Tagged results for collaborator calls plus a hard-timeout call wrapper."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Generic, Literal, TypeVar

from pydantic import ValidationError

T = TypeVar("T")
ErrorKind = Literal["timeout", "malformed", "transport"]

logger = logging.getLogger(__name__)


class MalformedResponseError(ValueError):
    """Collaborator answered, but the answer could not be parsed."""


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    detail: str

    def message(self) -> str:
        return f"{self.kind}: {self.detail}" if self.detail else self.kind


Outcome = Ok[T] | Err


def call_with_timeout(
    name: str,
    fn: Callable[..., T],
    *args: object,
    timeout_s: float,
) -> Ok[T] | Err:
    """Run ``fn`` on its own thread and classify whatever happens.

    The call is abandoned (not interrupted) once ``timeout_s`` elapses, so the
    caller always gets an outcome within the bound.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"call-{name}")
    try:
        future = pool.submit(fn, *args)
        try:
            return Ok(future.result(timeout=timeout_s))
        except FutureTimeoutError:
            future.cancel()
            return Err("timeout", f"{name} timed out after {timeout_s:.2f}s")
        except (MalformedResponseError, ValidationError, json.JSONDecodeError) as exc:
            return Err("malformed", str(exc) or type(exc).__name__)
        except Exception as exc:  # noqa: BLE001
            logger.warning("collaborator_call event=failed name=%s reason=%r", name, exc)
            return Err("transport", str(exc) or type(exc).__name__)
    finally:
        # Do not wait for an abandoned call.
        pool.shutdown(wait=False, cancel_futures=True)
