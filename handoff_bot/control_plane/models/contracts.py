"""Pydantic contracts for work items, audit runs, and orchestration decisions."""

from __future__ import annotations

import hashlib
import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class LifecycleStatus(str, Enum):
    CREATED = "CREATED"
    SPEC_READY = "SPEC_READY"
    IMPLEMENTING = "IMPLEMENTING"
    PR_CREATED = "PR_CREATED"
    VERIFIED = "VERIFIED"
    DONE = "DONE"


class HandoffState(str, Enum):
    NOT_SENT = "NOT_SENT"
    PENDING = "PENDING"
    SYNCED = "SYNCED"
    SYNCHRONIZED = "SYNCHRONIZED"
    FAILED = "FAILED"


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"


class StepStatus(str, Enum):
    STARTED = "STARTED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class BlockedBy(str, Enum):
    CONFIG = "CONFIG"
    POLICY = "POLICY"
    STATE = "STATE"
    UPSTREAM = "UPSTREAM"
    INTERNAL = "INTERNAL"


ACTIVE_STATUSES = frozenset({LifecycleStatus.IMPLEMENTING})


def short_id_for(work_item_id: str) -> str:
    return work_item_id.replace("-", "")[:8].lower()


class WorkItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    short_id: str = Field(min_length=1)
    title: str = ""
    body: str = ""
    labels: list[str] = Field(default_factory=list)
    priority: str = ""
    problem: str = ""
    scope: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    owner: str = ""
    lifecycle_status: LifecycleStatus = LifecycleStatus.CREATED
    handoff_state: HandoffState = HandoffState.NOT_SENT
    repo_full_name: str | None = None
    external_issue_number: int | None = None
    external_issue_url: str | None = None
    pr_number: int | None = None
    pr_url: str | None = None
    branch_name: str | None = None
    last_error: str | None = None
    handoff_at: str | None = None
    last_synced_at: str | None = None
    version: int = 0
    created_at: str = ""
    updated_at: str = ""

    @property
    def has_mirror(self) -> bool:
        return bool(
            self.repo_full_name and "/" in self.repo_full_name and self.external_issue_number
        )

    def spec_hash(self) -> str:
        """Hash of the work item content; any edit yields a fresh trigger key."""

        canonical = {
            "title": self.title.strip(),
            "body": self.body.strip(),
            "problem": self.problem.strip(),
            "scope": self.scope.strip(),
            "acceptance_criteria": [item.strip() for item in self.acceptance_criteria],
        }
        payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class Run(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    type: str
    work_item_id: str
    request_id: str
    actor: str = ""
    status: RunStatus = RunStatus.RUNNING
    error_message: str | None = None
    created_at: str = ""
    started_at: str = ""
    finished_at: str | None = None


class RunStep(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    run_id: str
    step_id: str
    step_name: str
    status: StepStatus
    error_message: str | None = None
    evidence: dict[str, Any] = Field(default_factory=dict)
    created_at: str = ""


class GuardrailDecision(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    allowed: bool
    code: str
    blocked_by: BlockedBy | None = None
    missing_config: tuple[str, ...] = ()
    details_safe: str = ""


_HTTP_STATUS_OVERRIDES = {
    "ISSUE_NOT_FOUND": 404,
    "TRIGGER_CONFIG_MISSING": 409,
    "AUTH_MISSING": 409,
    "UPSTREAM_UNREACHABLE": 502,
}
_HTTP_STATUS_BY_BLOCKED = {
    BlockedBy.CONFIG: 500,
    BlockedBy.POLICY: 403,
    BlockedBy.STATE: 409,
    BlockedBy.UPSTREAM: 409,
    BlockedBy.INTERNAL: 500,
}


class Decision(BaseModel):
    """Structured blocking or failure decision rendered by the transport layer."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    code: str
    phase: str
    blocked_by: BlockedBy
    next_action: str = ""
    missing_config: tuple[str, ...] = ()
    details_safe: str = ""
    request_id: str = ""
    upstream_status: int | None = None
    retryable: bool = False

    @property
    def http_status(self) -> int:
        if self.code in _HTTP_STATUS_OVERRIDES:
            return _HTTP_STATUS_OVERRIDES[self.code]
        return _HTTP_STATUS_BY_BLOCKED[self.blocked_by]

    def as_dict(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json")
        payload["missing_config"] = list(self.missing_config)
        return payload


class ExternalResourceReference(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: str
    repo: str
    number: int | None = None
    url: str | None = None
    branch: str | None = None
