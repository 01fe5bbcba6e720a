from __future__ import annotations

import pytest

from handoff_bot.control_plane.db.db import OrchestratorDB
from handoff_bot.control_plane.models.contracts import RunStatus, StepStatus
from handoff_bot.control_plane.models.errors import InternalError
from handoff_bot.control_plane.orchestration.audit import AuditRecorder
from handoff_bot.shared.redaction import REDACTED


def test_run_closes_exactly_once() -> None:
    db = OrchestratorDB()
    audit = AuditRecorder(db)
    item = db.create_work_item("audited")
    run = audit.open_run("handoff", item["id"], "req-1", actor="octo")
    assert run.status == RunStatus.RUNNING

    closed = audit.close_run(run.id, RunStatus.DONE)
    assert closed.status == RunStatus.DONE
    assert closed.finished_at

    with pytest.raises(InternalError) as exc_info:
        audit.close_run(run.id, RunStatus.FAILED, "late failure")

    assert exc_info.value.code == "RUN_ALREADY_CLOSED"
    assert db.get_run(run.id)["status"] == "DONE"


def test_steps_are_redacted_before_storage() -> None:
    db = OrchestratorDB()
    audit = AuditRecorder(db)
    item = db.create_work_item("secret")
    run = audit.open_run("handoff", item["id"], "req-2")

    audit.record_step(
        run.id,
        "handoff",
        "handoff",
        StepStatus.FAILED,
        {"write_token": "ghp_hunter2hunter2", "repo": "acme/widgets"},
        error_message="AUTH_INVALID: ghp_hunter2hunter2 rejected",
    )

    stored = db.list_run_steps(run.id)[0]
    assert stored["evidence"] == {"write_token": REDACTED, "repo": "acme/widgets"}
    assert stored["error_message"] == f"AUTH_INVALID: {REDACTED} rejected"


def test_find_succeeded_step_scans_only_recent_runs() -> None:
    db = OrchestratorDB()
    audit = AuditRecorder(db)
    item = db.create_work_item("keyed")
    old = audit.open_run("implement_trigger", item["id"], "req-old")
    audit.record_step(old.id, "trigger", "apply_trigger", StepStatus.SUCCEEDED, {"k": "abc"})
    newer = audit.open_run("implement_trigger", item["id"], "req-new")
    audit.record_step(newer.id, "trigger", "trigger", StepStatus.STARTED, {"k": "abc"})

    found = audit.find_succeeded_step(item["id"], "k", "abc")
    assert found is not None
    assert found.run_id == old.id
    assert audit.find_succeeded_step(item["id"], "k", "abc", limit=1) is None
    assert audit.find_succeeded_step(item["id"], "k", "abc", run_type="workflow_dispatch") is None


def test_other_run_types_do_not_consume_the_scan_window() -> None:
    db = OrchestratorDB()
    audit = AuditRecorder(db)
    item = db.create_work_item("busy")
    keyed = audit.open_run("implement_trigger", item["id"], "req-t")
    audit.record_step(keyed.id, "trigger", "apply_trigger", StepStatus.SUCCEEDED, {"k": "abc"})
    for number in range(5):
        poll = audit.open_run("workflow_poll", item["id"], f"req-p{number}")
        audit.record_step(poll.id, "workflow_poll", "poll", StepStatus.SUCCEEDED, {"k": "other"})

    assert audit.find_succeeded_step(item["id"], "k", "abc", limit=3) is None
    found = audit.find_succeeded_step(
        item["id"], "k", "abc", limit=1, run_type="implement_trigger"
    )
    assert found is not None
    assert found.run_id == keyed.id
