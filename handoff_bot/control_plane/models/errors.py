"""Error taxonomy carrying structured decisions through the orchestration stack."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator

from handoff_bot.control_plane.models.contracts import (
    BlockedBy,
    Decision,
    ExternalResourceReference,
)
from handoff_bot.shared.redaction import safe_details

logger = logging.getLogger(__name__)


class OrchestrationError(Exception):
    """Base error; every subclass carries the decision the caller renders."""

    def __init__(self, decision: Decision) -> None:
        super().__init__(f"{decision.code}: {decision.details_safe}".rstrip(": "))
        self.decision = decision

    @property
    def code(self) -> str:
        return self.decision.code

    def as_dict(self) -> dict[str, Any]:
        return self.decision.as_dict()


class PreflightBlocked(OrchestrationError):
    pass


class TransitionConflict(OrchestrationError):
    def __init__(self, decision: Decision, active_work_item_id: str | None = None) -> None:
        super().__init__(decision)
        self.active_work_item_id = active_work_item_id

    def as_dict(self) -> dict[str, Any]:
        payload = super().as_dict()
        if self.active_work_item_id:
            payload["active_work_item_id"] = self.active_work_item_id
        return payload


class UpstreamFailure(OrchestrationError):
    pass


class ReconciliationConflict(UpstreamFailure):
    pass


class InternalError(OrchestrationError):
    pass


class PartialFailureError(OrchestrationError):
    """Upstream side effect succeeded but the state or audit write did not."""

    def __init__(self, decision: Decision, external_ref: ExternalResourceReference) -> None:
        super().__init__(decision)
        self.external_ref = external_ref

    def as_dict(self) -> dict[str, Any]:
        payload = super().as_dict()
        payload["external_ref"] = self.external_ref.model_dump(mode="json")
        return payload


def internal_decision(code: str, phase: str, details: str = "", request_id: str = "") -> Decision:
    return Decision(
        code=code,
        phase=phase,
        blocked_by=BlockedBy.INTERNAL,
        next_action="contact_operator",
        details_safe=safe_details(details),
        request_id=request_id,
    )


@contextmanager
def store_errors(phase: str, request_id: str = "") -> Iterator[None]:
    """Re-raise SQLite failures as INTERNAL orchestration errors."""

    try:
        yield
    except sqlite3.Error as exc:
        logger.exception("store failure during %s", phase)
        raise InternalError(
            internal_decision("STORE_FAILURE", phase, str(exc), request_id)
        ) from exc
