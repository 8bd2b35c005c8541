"""PostgreSQL storage backend for assessment tasks.

Beginner terms:
- Partial unique index: uniqueness enforced only for rows matching a WHERE
  clause (here: tasks that have not FAILED).
- ON CONFLICT DO NOTHING: insert-if-absent in a single statement.
- RETURNING: lets an UPDATE report whether its WHERE guard matched a row.
"""

from __future__ import annotations

import json
import threading
import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from assessment_api.app.errors import InternalError
from assessment_api.app.models import RiskCounts, Task, TaskStatus
from assessment_api.app.storage.base import GuardField, normalize_expected, validate_patch

# Patch fields that map 1:1 onto a column of the same name.
_SCALAR_COLUMNS = (
    "status",
    "assessment_summary",
    "error_message",
    "processed_at",
    "report_status",
    "report_artifact",
    "report_started_at",
    "report_generated_at",
    "report_error",
    "payment_ref",
    "payment_amount",
    "paid_at",
)


class PostgresTaskStorage:
    """Thread-safe PostgreSQL-backed storage for Task records."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("ASSESSMENT_API_DATABASE_URL is required")
        self.database_url = database_url
        # Lock guards DB operations done through this storage instance.
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        """Create required table and indexes if they do not already exist."""
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS assessment_tasks (
                    task_id UUID PRIMARY KEY,
                    submission_ref TEXT NOT NULL,
                    status TEXT NOT NULL,
                    high_risk_count INTEGER,
                    medium_risk_count INTEGER,
                    low_risk_count INTEGER,
                    assessment_summary TEXT,
                    raw_assessment JSONB,
                    error_message TEXT,
                    report_status TEXT NOT NULL DEFAULT 'NOT_STARTED',
                    report_artifact TEXT,
                    report_started_at TIMESTAMPTZ,
                    report_generated_at TIMESTAMPTZ,
                    report_error TEXT,
                    payment_ref TEXT,
                    payment_amount DOUBLE PRECISION,
                    paid_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL,
                    processed_at TIMESTAMPTZ
                )
                """)
            # At most one non-FAILED task per submission.
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_assessment_tasks_active_submission
                ON assessment_tasks(submission_ref)
                WHERE status <> 'FAILED'
                """)
            # Tables created before report_started_at existed.
            conn.execute(
                "ALTER TABLE assessment_tasks ADD COLUMN IF NOT EXISTS report_started_at TIMESTAMPTZ"
            )
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_assessment_tasks_status
                ON assessment_tasks(status)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_assessment_tasks_created_at
                ON assessment_tasks(created_at DESC)
                """)
            conn.commit()

    def insert_if_absent(self, record: Task) -> tuple[Task, bool]:
        # The active row can turn FAILED between the two statements; retry then.
        for _ in range(3):
            with self._lock, self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO assessment_tasks (
                        task_id,
                        submission_ref,
                        status,
                        report_status,
                        created_at
                    ) VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (submission_ref) WHERE status <> 'FAILED' DO NOTHING
                    RETURNING *
                    """,
                    (
                        uuid.UUID(record.task_id),
                        record.submission_ref,
                        record.status,
                        record.report_status,
                        record.created_at,
                    ),
                ).fetchone()
                if row is None:
                    row = conn.execute(
                        """
                        SELECT *
                        FROM assessment_tasks
                        WHERE submission_ref = %s AND status <> 'FAILED'
                        """,
                        (record.submission_ref,),
                    ).fetchone()
                    conn.commit()
                    if row is not None:
                        return self._row_to_task(row), False
                    continue
                conn.commit()
            return self._row_to_task(row), True
        raise InternalError(
            "Could not insert task", submission_ref=record.submission_ref
        )

    def get_task(self, task_id: str) -> Task | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM assessment_tasks WHERE task_id::text = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def get_task_by_submission(self, submission_ref: str) -> Task | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM assessment_tasks
                WHERE submission_ref = %s
                ORDER BY (status <> 'FAILED') DESC, created_at DESC
                LIMIT 1
                """,
                (submission_ref,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Task], int]:
        where = "WHERE status = %s" if status is not None else ""
        params: tuple[Any, ...] = (status,) if status is not None else ()
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT *
                FROM assessment_tasks
                {where}
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
                """,
                (*params, limit, offset),
            ).fetchall()
            count_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM assessment_tasks {where}",
                params,
            ).fetchone()
        total = int(count_row["total"]) if count_row else 0
        return [self._row_to_task(row) for row in rows], total

    def conditional_update(
        self,
        task_id: str,
        *,
        field: GuardField,
        expected: str | Iterable[str],
        patch: dict[str, Any],
        require_null: Iterable[str] = (),
    ) -> bool:
        expected_values = normalize_expected(expected)
        require_null = tuple(require_null)
        validate_patch(field, patch, require_null)
        columns = self._patch_to_columns(patch)
        if not columns:
            raise ValueError("patch must set at least one field")
        # Column names come from a fixed whitelist, never from callers.
        assignments = ", ".join(f"{column} = %s" for column in columns)
        null_guard = "".join(
            f" AND {column} IS NULL" for column in self._null_columns(require_null)
        )
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE assessment_tasks
                SET {assignments}
                WHERE task_id::text = %s AND {field} = ANY(%s){null_guard}
                RETURNING task_id
                """,
                (*columns.values(), task_id, list(expected_values)),
            ).fetchone()
            conn.commit()
        return row is not None

    def _patch_to_columns(self, patch: dict[str, Any]) -> dict[str, Any]:
        columns: dict[str, Any] = {}
        for name in _SCALAR_COLUMNS:
            if name in patch:
                columns[name] = patch[name]
        if "risk_counts" in patch:
            counts = patch["risk_counts"]
            if isinstance(counts, dict):
                counts = RiskCounts.model_validate(counts)
            columns["high_risk_count"] = counts.high if counts else None
            columns["medium_risk_count"] = counts.medium if counts else None
            columns["low_risk_count"] = counts.low if counts else None
        if "raw_assessment" in patch:
            raw = patch["raw_assessment"]
            columns["raw_assessment"] = self._json_wrapper(raw) if raw is not None else None
        return columns

    @staticmethod
    def _null_columns(fields: Iterable[str]) -> list[str]:
        columns: list[str] = []
        for name in fields:
            if name == "risk_counts":
                columns.append("high_risk_count")
            elif name in _SCALAR_COLUMNS or name == "raw_assessment":
                columns.append(name)
            else:
                raise ValueError(f"Unsupported null guard field: {name}")
        return columns

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_optional(raw: Any) -> dict[str, Any] | None:
        if raw is None:
            return None
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if isinstance(parsed, dict):
            return parsed
        return None

    @staticmethod
    def _parse_datetime_optional(raw: Any) -> datetime | None:
        if raw is None or isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_task(cls, row: Any) -> Task:
        """Map one DB row to the canonical Task model."""
        risk_counts = None
        if row["high_risk_count"] is not None:
            risk_counts = RiskCounts(
                high=row["high_risk_count"],
                medium=row["medium_risk_count"],
                low=row["low_risk_count"],
            )
        return Task(
            task_id=str(row["task_id"]),
            submission_ref=row["submission_ref"],
            status=row["status"],
            risk_counts=risk_counts,
            assessment_summary=row["assessment_summary"],
            raw_assessment=cls._parse_json_optional(row["raw_assessment"]),
            error_message=row["error_message"],
            report_status=row["report_status"],
            report_artifact=row["report_artifact"],
            report_started_at=cls._parse_datetime_optional(row.get("report_started_at")),
            report_generated_at=cls._parse_datetime_optional(row["report_generated_at"]),
            report_error=row["report_error"],
            payment_ref=row["payment_ref"],
            payment_amount=row["payment_amount"],
            paid_at=cls._parse_datetime_optional(row["paid_at"]),
            created_at=cls._parse_datetime_optional(row["created_at"]),
            processed_at=cls._parse_datetime_optional(row["processed_at"]),
        )
