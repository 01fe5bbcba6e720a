"""SQLite persistence for work items, orchestration runs, and audit events."""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator


WORK_ITEM_UPDATABLE_COLUMNS = {
    "title",
    "body",
    "priority",
    "problem",
    "scope",
    "owner",
    "lifecycle_status",
    "handoff_state",
    "repo_full_name",
    "external_issue_number",
    "external_issue_url",
    "pr_number",
    "pr_url",
    "branch_name",
    "last_error",
    "handoff_at",
    "last_synced_at",
}


class OrchestratorDB:
    """Small SQLite wrapper for work items, runs, run steps, and audit events.

    Every write outside :meth:`transaction` autocommits. Coordination between
    independent workers relies on conditional updates against ``version`` and
    ``status`` columns, never on in-process locks.
    """

    def __init__(self, db_path: Path | str = ":memory:", timeout_s: float = 5.0) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=timeout_s,
        )
        self.conn.row_factory = sqlite3.Row
        self._tx_depth = 0
        self._configure_connection(timeout_s)
        self._init_schema()

    def _configure_connection(self, timeout_s: float) -> None:
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute(f"PRAGMA busy_timeout={int(timeout_s * 1000)}")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA foreign_keys=ON")

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS work_items (
                id TEXT PRIMARY KEY,
                short_id TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT '',
                body TEXT NOT NULL DEFAULT '',
                labels_json TEXT NOT NULL DEFAULT '[]',
                priority TEXT NOT NULL DEFAULT '',
                problem TEXT NOT NULL DEFAULT '',
                scope TEXT NOT NULL DEFAULT '',
                acceptance_criteria_json TEXT NOT NULL DEFAULT '[]',
                owner TEXT NOT NULL DEFAULT '',
                lifecycle_status TEXT NOT NULL DEFAULT 'CREATED',
                handoff_state TEXT NOT NULL DEFAULT 'NOT_SENT',
                repo_full_name TEXT,
                external_issue_number INTEGER,
                external_issue_url TEXT,
                pr_number INTEGER,
                pr_url TEXT,
                branch_name TEXT,
                last_error TEXT,
                handoff_at TEXT,
                last_synced_at TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_work_items_short_id ON work_items(short_id);
            CREATE INDEX IF NOT EXISTS idx_work_items_lifecycle ON work_items(lifecycle_status);

            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                work_item_id TEXT NOT NULL,
                request_id TEXT NOT NULL,
                actor TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'RUNNING',
                error_message TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                FOREIGN KEY(work_item_id) REFERENCES work_items(id)
            );

            CREATE INDEX IF NOT EXISTS idx_runs_work_item ON runs(work_item_id);

            CREATE TABLE IF NOT EXISTS run_steps (
                id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                status TEXT NOT NULL,
                error_message TEXT,
                evidence_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                FOREIGN KEY(run_id) REFERENCES runs(id)
            );

            CREATE INDEX IF NOT EXISTS idx_run_steps_run ON run_steps(run_id);

            CREATE TABLE IF NOT EXISTS audit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                event_json TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS operation_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                operation_family TEXT NOT NULL,
                outcome TEXT NOT NULL,
                count INTEGER NOT NULL DEFAULT 0,
                total_latency_ms REAL NOT NULL DEFAULT 0,
                UNIQUE(operation_family, outcome)
            );
            """
        )

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group writes into one atomic unit; nested calls join the outer one."""

        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield
            finally:
                self._tx_depth -= 1
            return

        self.conn.execute("BEGIN IMMEDIATE")
        self._tx_depth = 1
        try:
            yield
        except BaseException:
            self._tx_depth = 0
            self.conn.execute("ROLLBACK")
            raise
        self._tx_depth = 0
        self.conn.execute("COMMIT")

    def create_work_item(
        self,
        title: str,
        body: str = "",
        labels: list[str] | None = None,
        priority: str = "",
        problem: str = "",
        scope: str = "",
        acceptance_criteria: list[str] | None = None,
        owner: str = "",
        repo_full_name: str | None = None,
        work_item_id: str = "",
    ) -> dict[str, Any]:
        item_id = work_item_id or str(uuid.uuid4())
        now = utc_now_iso()
        self.conn.execute(
            """
            INSERT INTO work_items (
                id, short_id, title, body, labels_json, priority, problem, scope,
                acceptance_criteria_json, owner, repo_full_name, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item_id,
                item_id.replace("-", "")[:8].lower(),
                title,
                body,
                json.dumps(labels or []),
                priority,
                problem,
                scope,
                json.dumps(acceptance_criteria or []),
                owner,
                repo_full_name,
                now,
                now,
            ),
        )
        return self.get_work_item(item_id) or {}

    def get_work_item(self, work_item_id: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT * FROM work_items WHERE id = ?", (work_item_id,)
        ).fetchone()
        if row is None:
            return None
        return _work_item_from_row(row)

    def find_work_items_by_short_id(self, short_id: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM work_items WHERE short_id = ? ORDER BY created_at ASC",
            (short_id.lower(),),
        ).fetchall()
        return [_work_item_from_row(row) for row in rows]

    def update_work_item(
        self, work_item_id: str, expected_version: int, fields: dict[str, Any]
    ) -> bool:
        """Apply ``fields`` only if the row still carries ``expected_version``."""

        assignments, params = _assignments(fields)
        cur = self.conn.execute(
            f"""
            UPDATE work_items
            SET {assignments}, version = version + 1, updated_at = ?
            WHERE id = ? AND version = ?
            """,
            (*params, utc_now_iso(), work_item_id, expected_version),
        )
        return cur.rowcount == 1

    def activate_work_item(
        self,
        work_item_id: str,
        expected_version: int,
        active_statuses: list[str],
        fields: dict[str, Any],
    ) -> bool:
        """Conditionally move an item into an active status.

        The update matches nothing when the version moved or when any other item
        already holds one of ``active_statuses``.
        """

        assignments, params = _assignments(fields)
        placeholders = ", ".join("?" for _ in active_statuses)
        cur = self.conn.execute(
            f"""
            UPDATE work_items
            SET {assignments}, version = version + 1, updated_at = ?
            WHERE id = ? AND version = ?
              AND NOT EXISTS (
                SELECT 1 FROM work_items other
                WHERE other.id != ? AND other.lifecycle_status IN ({placeholders})
              )
            """,
            (*params, utc_now_iso(), work_item_id, expected_version, work_item_id, *active_statuses),
        )
        return cur.rowcount == 1

    def get_active_work_item(
        self, active_statuses: list[str], exclude_id: str = ""
    ) -> dict[str, Any] | None:
        placeholders = ", ".join("?" for _ in active_statuses)
        row = self.conn.execute(
            f"""
            SELECT * FROM work_items
            WHERE lifecycle_status IN ({placeholders}) AND id != ?
            ORDER BY updated_at ASC
            LIMIT 1
            """,
            (*active_statuses, exclude_id),
        ).fetchone()
        if row is None:
            return None
        return _work_item_from_row(row)

    def list_stale_pending(self, updated_before: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT * FROM work_items
            WHERE handoff_state = 'PENDING' AND updated_at < ?
            ORDER BY updated_at ASC
            """,
            (updated_before,),
        ).fetchall()
        return [_work_item_from_row(row) for row in rows]

    def insert_run(
        self, run_type: str, work_item_id: str, request_id: str, actor: str = ""
    ) -> dict[str, Any]:
        run_id = uuid.uuid4().hex
        now = utc_now_iso()
        self.conn.execute(
            """
            INSERT INTO runs (id, type, work_item_id, request_id, actor, status, created_at, started_at)
            VALUES (?, ?, ?, ?, ?, 'RUNNING', ?, ?)
            """,
            (run_id, run_type, work_item_id, request_id, actor, now, now),
        )
        return self.get_run(run_id) or {}

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        row = self.conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        if row is None:
            return None
        return dict(row)

    def close_run(self, run_id: str, status: str, error_message: str | None = None) -> bool:
        cur = self.conn.execute(
            """
            UPDATE runs
            SET status = ?, error_message = ?, finished_at = ?
            WHERE id = ? AND status = 'RUNNING'
            """,
            (status, error_message, utc_now_iso(), run_id),
        )
        return cur.rowcount == 1

    def list_runs(self, work_item_id: str, limit: int = 50) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT * FROM runs
            WHERE work_item_id = ?
            ORDER BY rowid DESC
            LIMIT ?
            """,
            (work_item_id, limit),
        ).fetchall()
        return [dict(row) for row in rows]

    def insert_run_step(
        self,
        run_id: str,
        step_id: str,
        step_name: str,
        status: str,
        evidence: dict[str, Any],
        error_message: str | None = None,
    ) -> dict[str, Any]:
        step_row_id = uuid.uuid4().hex
        self.conn.execute(
            """
            INSERT INTO run_steps (
                id, run_id, step_id, step_name, status, error_message, evidence_json, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                step_row_id,
                run_id,
                step_id,
                step_name,
                status,
                error_message,
                json.dumps(evidence, sort_keys=True),
                utc_now_iso(),
            ),
        )
        row = self.conn.execute("SELECT * FROM run_steps WHERE id = ?", (step_row_id,)).fetchone()
        return _run_step_from_row(row)

    def list_run_steps(self, run_id: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM run_steps WHERE run_id = ? ORDER BY rowid ASC", (run_id,)
        ).fetchall()
        return [_run_step_from_row(row) for row in rows]

    def list_recent_steps(
        self, work_item_id: str, run_limit: int = 20, status: str = "", run_type: str = ""
    ) -> list[dict[str, Any]]:
        """Steps of the ``run_limit`` newest runs, newest step first.

        ``run_type`` narrows the runs before the limit applies, so runs of other
        types never push a matching run out of the window.
        """

        params: tuple[Any, ...] = (work_item_id,)
        type_clause = ""
        if run_type:
            type_clause = "AND type = ?"
            params = (*params, run_type)
        params = (*params, run_limit)
        status_clause = ""
        if status:
            status_clause = "AND s.status = ?"
            params = (*params, status)
        rows = self.conn.execute(
            f"""
            SELECT s.*, r.type AS run_type
            FROM run_steps s
            INNER JOIN (
                SELECT id, type FROM runs
                WHERE work_item_id = ? {type_clause}
                ORDER BY rowid DESC
                LIMIT ?
            ) r ON r.id = s.run_id
            WHERE 1 = 1 {status_clause}
            ORDER BY s.rowid DESC
            """,
            params,
        ).fetchall()
        steps = []
        for row in rows:
            step = _run_step_from_row(row)
            step["run_type"] = row["run_type"]
            steps.append(step)
        return steps

    def append_audit_event(self, event_type: str, payload: dict[str, Any]) -> None:
        self.conn.execute(
            "INSERT INTO audit_events (event_type, event_json) VALUES (?, ?)",
            (event_type, json.dumps(payload, sort_keys=True)),
        )

    def list_audit_events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        if event_type:
            rows = self.conn.execute(
                "SELECT id, event_type, event_json, created_at FROM audit_events WHERE event_type = ? ORDER BY id ASC",
                (event_type,),
            )
        else:
            rows = self.conn.execute(
                "SELECT id, event_type, event_json, created_at FROM audit_events ORDER BY id ASC"
            )
        return [
            {
                "id": int(row["id"]),
                "event_type": row["event_type"],
                "payload": json.loads(row["event_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    def record_operation_metric(
        self, operation_family: str, outcome: str, latency_ms: float
    ) -> None:
        self.conn.execute(
            """
            INSERT INTO operation_metrics (operation_family, outcome, count, total_latency_ms)
            VALUES (?, ?, 1, ?)
            ON CONFLICT(operation_family, outcome) DO UPDATE SET
              count = count + 1,
              total_latency_ms = total_latency_ms + excluded.total_latency_ms
            """,
            (operation_family, outcome, float(latency_ms)),
        )

    def list_operation_metrics(self) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT operation_family, outcome, count, total_latency_ms
            FROM operation_metrics
            ORDER BY operation_family ASC, outcome ASC
            """
        )
        return [dict(row) for row in rows]

    def close(self) -> None:
        self.conn.close()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _assignments(fields: dict[str, Any]) -> tuple[str, list[Any]]:
    unknown = set(fields) - WORK_ITEM_UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"unknown_work_item_columns:{','.join(sorted(unknown))}")
    if not fields:
        raise ValueError("empty_work_item_update")
    columns = sorted(fields)
    assignments = ", ".join(f"{column} = ?" for column in columns)
    return assignments, [_column_value(fields[column]) for column in columns]


def _column_value(value: Any) -> Any:
    if hasattr(value, "value"):
        return value.value
    return value


def _work_item_from_row(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    item["labels"] = json.loads(item.pop("labels_json") or "[]")
    item["acceptance_criteria"] = json.loads(item.pop("acceptance_criteria_json") or "[]")
    return item


def _run_step_from_row(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "run_id": row["run_id"],
        "step_id": row["step_id"],
        "step_name": row["step_name"],
        "status": row["status"],
        "error_message": row["error_message"],
        "evidence": json.loads(row["evidence_json"] or "{}"),
        "created_at": row["created_at"],
    }
