"""Append-only audit trail of orchestration runs and their steps."""

from __future__ import annotations

import logging
from typing import Any

from handoff_bot.control_plane.db.db import OrchestratorDB
from handoff_bot.control_plane.models.contracts import Run, RunStatus, RunStep, StepStatus
from handoff_bot.control_plane.models.errors import InternalError, internal_decision, store_errors
from handoff_bot.shared.redaction import redact, redact_text

logger = logging.getLogger(__name__)

DEFAULT_RUN_SCAN_LIMIT = 20


class AuditRecorder:
    """Open, annotate, and close runs.

    Evidence and error messages are redacted before they reach the store, so
    whatever is read back is already safe to show a caller.
    """

    def __init__(self, db: OrchestratorDB) -> None:
        self.db = db

    def open_run(self, run_type: str, work_item_id: str, request_id: str, actor: str = "") -> Run:
        with store_errors("audit.open_run", request_id):
            row = self.db.insert_run(run_type, work_item_id, request_id, actor)
        logger.info("opened run %s type=%s work_item=%s", row["id"], run_type, work_item_id)
        return Run.model_validate(row)

    def record_step(
        self,
        run_id: str,
        step_id: str,
        step_name: str,
        status: StepStatus,
        evidence: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> RunStep:
        with store_errors("audit.record_step"):
            row = self.db.insert_run_step(
                run_id=run_id,
                step_id=step_id,
                step_name=step_name,
                status=StepStatus(status).value,
                evidence=redact(evidence or {}),
                error_message=redact_text(error_message) if error_message else None,
            )
        return RunStep.model_validate(row)

    def close_run(self, run_id: str, status: RunStatus, error_message: str | None = None) -> Run:
        with store_errors("audit.close_run"):
            closed = self.db.close_run(
                run_id,
                RunStatus(status).value,
                redact_text(error_message) if error_message else None,
            )
            row = self.db.get_run(run_id)
        if not closed:
            raise InternalError(
                internal_decision("RUN_ALREADY_CLOSED", "audit.close_run", f"run {run_id}")
            )
        logger.info("closed run %s status=%s", run_id, RunStatus(status).value)
        return Run.model_validate(row)

    def find_succeeded_step(
        self,
        work_item_id: str,
        key_field: str,
        key: str,
        limit: int = DEFAULT_RUN_SCAN_LIMIT,
        run_type: str = "",
    ) -> RunStep | None:
        """Return the newest SUCCEEDED step whose evidence carries ``key``.

        Only the ``limit`` newest runs of ``run_type`` (any type when empty) are
        scanned.
        """

        with store_errors("audit.find_succeeded_step"):
            steps = self.db.list_recent_steps(
                work_item_id,
                run_limit=limit,
                status=StepStatus.SUCCEEDED.value,
                run_type=run_type,
            )
        for step in steps:
            if step["evidence"].get(key_field) == key:
                step.pop("run_type", None)
                return RunStep.model_validate(step)
        return None

    def list_runs(self, work_item_id: str, limit: int = 50) -> list[Run]:
        with store_errors("audit.list_runs"):
            rows = self.db.list_runs(work_item_id, limit=limit)
        return [Run.model_validate(row) for row in rows]

    def list_steps(self, run_id: str) -> list[RunStep]:
        with store_errors("audit.list_steps"):
            rows = self.db.list_run_steps(run_id)
        return [RunStep.model_validate(row) for row in rows]

    def append_event(self, event_type: str, payload: dict[str, Any]) -> None:
        with store_errors(f"audit.{event_type}"):
            self.db.append_audit_event(event_type, redact(payload))
