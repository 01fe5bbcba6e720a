"""Validated, version-checked lifecycle and handoff transitions."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from handoff_bot.control_plane.db.db import OrchestratorDB
from handoff_bot.control_plane.models.contracts import (
    ACTIVE_STATUSES,
    BlockedBy,
    Decision,
    HandoffState,
    LifecycleStatus,
    WorkItem,
)
from handoff_bot.control_plane.models.errors import TransitionConflict, store_errors
from handoff_bot.control_plane.orchestration.audit import AuditRecorder
from handoff_bot.shared.redaction import safe_details

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[LifecycleStatus, set[LifecycleStatus]] = {
    LifecycleStatus.CREATED: {LifecycleStatus.SPEC_READY},
    LifecycleStatus.SPEC_READY: {LifecycleStatus.IMPLEMENTING, LifecycleStatus.PR_CREATED},
    LifecycleStatus.IMPLEMENTING: {LifecycleStatus.PR_CREATED, LifecycleStatus.SPEC_READY},
    LifecycleStatus.PR_CREATED: {LifecycleStatus.IMPLEMENTING, LifecycleStatus.VERIFIED},
    LifecycleStatus.VERIFIED: {LifecycleStatus.DONE},
    LifecycleStatus.DONE: set(),
}
HANDOFF_TRANSITIONS: dict[HandoffState, set[HandoffState]] = {
    HandoffState.NOT_SENT: {HandoffState.PENDING},
    HandoffState.SYNCED: {HandoffState.PENDING},
    HandoffState.FAILED: {HandoffState.PENDING},
    HandoffState.PENDING: {HandoffState.SYNCED, HandoffState.SYNCHRONIZED, HandoffState.FAILED},
    HandoffState.SYNCHRONIZED: set(),
}
SYNCED_STATES = frozenset({HandoffState.SYNCED, HandoffState.SYNCHRONIZED})


def validate_transition(
    item: WorkItem,
    target_status: LifecycleStatus | None = None,
    target_handoff: HandoffState | None = None,
    request_id: str = "",
) -> None:
    """Raise ``TransitionConflict`` unless the combined target state is legal."""

    if target_status is not None and target_status != item.lifecycle_status:
        if target_status not in ALLOWED_TRANSITIONS.get(item.lifecycle_status, set()):
            raise TransitionConflict(
                _state_decision(
                    "INVALID_TRANSITION",
                    f"{item.lifecycle_status.value} -> {target_status.value} not allowed",
                    request_id,
                )
            )
    if target_handoff is not None and target_handoff != item.handoff_state:
        if target_handoff not in HANDOFF_TRANSITIONS.get(item.handoff_state, set()):
            raise TransitionConflict(
                _state_decision(
                    "INVALID_HANDOFF_TRANSITION",
                    f"{item.handoff_state.value} -> {target_handoff.value} not allowed",
                    request_id,
                )
            )

    status = target_status or item.lifecycle_status
    handoff = target_handoff or item.handoff_state
    if status == LifecycleStatus.CREATED and handoff in SYNCED_STATES:
        raise TransitionConflict(
            _state_decision(
                "STATE_INCONSISTENT",
                f"{status.value} is incompatible with handoff {handoff.value}",
                request_id,
            )
        )


class StateTransitionApplier:
    def __init__(self, db: OrchestratorDB, audit: AuditRecorder) -> None:
        self.db = db
        self.audit = audit

    def apply(
        self,
        item: WorkItem,
        target_status: LifecycleStatus | None = None,
        target_handoff: HandoffState | None = None,
        fields: dict[str, Any] | None = None,
        request_id: str = "",
        actor: str = "",
        audit_step: dict[str, Any] | None = None,
    ) -> WorkItem:
        """Commit a transition against the snapshot ``item`` was read from.

        ``audit_step`` holds ``AuditRecorder.record_step`` keyword arguments that
        are written in the same store transaction as the state change.
        """

        validate_transition(item, target_status, target_handoff, request_id)
        updates = dict(fields or {})
        if target_status is not None:
            updates["lifecycle_status"] = target_status
        if target_handoff is not None:
            updates["handoff_state"] = target_handoff
            if target_handoff == HandoffState.PENDING:
                updates["last_error"] = None
        if not updates:
            return item

        activating = (
            target_status in ACTIVE_STATUSES and target_status != item.lifecycle_status
        )
        with store_errors("state.apply", request_id):
            with self.db.transaction():
                if activating:
                    changed = self.db.activate_work_item(
                        item.id,
                        item.version,
                        [status.value for status in ACTIVE_STATUSES],
                        updates,
                    )
                else:
                    changed = self.db.update_work_item(item.id, item.version, updates)
                if changed:
                    if target_status is not None and target_status != item.lifecycle_status:
                        self.db.append_audit_event(
                            "lifecycle_transitioned",
                            {
                                "work_item_id": item.id,
                                "from_status": item.lifecycle_status.value,
                                "to_status": target_status.value,
                                "actor": actor,
                                "request_id": request_id,
                            },
                        )
                    if audit_step:
                        self.audit.record_step(**audit_step)
                current = self.db.get_work_item(item.id)

        if not changed:
            self._raise_conflict(item, current, activating, request_id)
        updated = WorkItem.model_validate(current)
        if target_status is not None and target_status != item.lifecycle_status:
            logger.info(
                "work item %s lifecycle %s -> %s",
                item.id,
                item.lifecycle_status.value,
                target_status.value,
            )
        if target_handoff is not None and target_handoff != item.handoff_state:
            logger.info(
                "work item %s handoff %s -> %s",
                item.id,
                item.handoff_state.value,
                target_handoff.value,
            )
        return updated

    def begin_handoff(
        self,
        item: WorkItem,
        request_id: str = "",
        actor: str = "",
        audit_step: dict[str, Any] | None = None,
    ) -> WorkItem:
        return self.apply(
            item,
            target_handoff=HandoffState.PENDING,
            request_id=request_id,
            actor=actor,
            audit_step=audit_step,
        )

    def fail_handoff(
        self,
        item: WorkItem,
        error: str,
        request_id: str = "",
        audit_step: dict[str, Any] | None = None,
    ) -> WorkItem:
        return self.apply(
            item,
            target_handoff=HandoffState.FAILED,
            fields={"last_error": safe_details(error, 500)},
            request_id=request_id,
            audit_step=audit_step,
        )

    def recover_stale_pending(self, older_than_s: float, request_id: str = "") -> list[WorkItem]:
        """Move PENDING items untouched for ``older_than_s`` seconds to FAILED."""

        cutoff = _iso_seconds_ago(older_than_s)
        with store_errors("state.recover_stale_pending", request_id):
            rows = self.db.list_stale_pending(cutoff)
        recovered: list[WorkItem] = []
        for row in rows:
            item = WorkItem.model_validate(row)
            try:
                recovered.append(self.fail_handoff(item, "stale_pending", request_id=request_id))
            except TransitionConflict:
                logger.warning("work item %s changed during stale recovery; skipped", item.id)
        return recovered

    def _raise_conflict(
        self,
        item: WorkItem,
        current: dict[str, Any] | None,
        activating: bool,
        request_id: str,
    ) -> None:
        if activating and current is not None and int(current["version"]) == item.version:
            with store_errors("state.find_active", request_id):
                active = self.db.get_active_work_item(
                    [status.value for status in ACTIVE_STATUSES], exclude_id=item.id
                )
            if active is not None:
                logger.warning(
                    "activation of %s rejected; %s is already active", item.id, active["id"]
                )
                raise TransitionConflict(
                    _state_decision(
                        "SINGLE_ACTIVE_CONFLICT",
                        f"work item {active['id']} is already {active['lifecycle_status']}",
                        request_id,
                        next_action="finish_active_work_item",
                    ),
                    active_work_item_id=active["id"],
                )
        raise TransitionConflict(
            _state_decision(
                "CONCURRENT_MODIFICATION",
                f"work item {item.id} changed since version {item.version}",
                request_id,
                next_action="retry",
                retryable=True,
            )
        )


def _state_decision(
    code: str,
    details: str,
    request_id: str,
    next_action: str = "check_work_item_state",
    retryable: bool = False,
) -> Decision:
    return Decision(
        code=code,
        phase="state_transition",
        blocked_by=BlockedBy.STATE,
        next_action=next_action,
        details_safe=safe_details(details),
        request_id=request_id,
        retryable=retryable,
    )


def _iso_seconds_ago(seconds: float) -> str:
    moment = datetime.now(timezone.utc) - timedelta(seconds=max(0.0, seconds))
    return moment.isoformat(timespec="microseconds").replace("+00:00", "Z")
