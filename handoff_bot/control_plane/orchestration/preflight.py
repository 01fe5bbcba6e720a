"""Ordered preflight checks run before any mutating GitHub call."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from handoff_bot.control_plane.config.config_resolver import (
    CAPABILITY_ACTIONS_WRITE,
    CAPABILITY_CONTENTS_WRITE,
    CAPABILITY_ISSUES_WRITE,
    CAPABILITY_PULL_REQUESTS_WRITE,
    KEY_GITHUB_REPO,
    KEY_IMPLEMENT_COMMENT,
    KEY_IMPLEMENT_LABEL,
    KEY_STAGE,
    KEY_WRITE_TOKEN,
    EngineConfig,
)
from handoff_bot.control_plane.db.db import OrchestratorDB
from handoff_bot.control_plane.github.github_connector import (
    AuthInvalidError,
    AuthMissingError,
    ClientFactory,
    GitHubConnector,
)
from handoff_bot.control_plane.models.contracts import (
    BlockedBy,
    Decision,
    LifecycleStatus,
    WorkItem,
)
from handoff_bot.control_plane.models.errors import InternalError, internal_decision, store_errors
from handoff_bot.control_plane.orchestration import guardrails
from handoff_bot.shared.redaction import safe_details


DEFAULT_IMPLEMENT_LABEL = "implement"
DEFAULT_IMPLEMENT_COMMENT = "Implementation requested for #{issue_number} ({short_id}): {title}"

_IMPLEMENT_STATUSES = frozenset(
    {LifecycleStatus.SPEC_READY, LifecycleStatus.IMPLEMENTING, LifecycleStatus.PR_CREATED}
)


@dataclass(frozen=True)
class OperationProfile:
    name: str
    guardrail_operation: str
    capabilities: tuple[str, ...]
    legal_statuses: frozenset[LifecycleStatus] | None = None
    requires_mirror: bool = False
    trigger_keys: tuple[tuple[str, str], ...] = ()
    required_config: tuple[str, ...] = ()
    repo_fallback_key: str = ""


HANDOFF = OperationProfile(
    name="handoff",
    guardrail_operation="handoff_issue",
    capabilities=(CAPABILITY_ISSUES_WRITE,),
    repo_fallback_key=KEY_GITHUB_REPO,
)
IMPLEMENT_TRIGGER = OperationProfile(
    name="implement_trigger",
    guardrail_operation="implement_trigger",
    capabilities=(CAPABILITY_ISSUES_WRITE,),
    legal_statuses=_IMPLEMENT_STATUSES,
    requires_mirror=True,
    trigger_keys=(
        (KEY_IMPLEMENT_LABEL, DEFAULT_IMPLEMENT_LABEL),
        (KEY_IMPLEMENT_COMMENT, DEFAULT_IMPLEMENT_COMMENT),
    ),
)
IMPLEMENT = OperationProfile(
    name="implement",
    guardrail_operation="create_pull_request",
    capabilities=(CAPABILITY_CONTENTS_WRITE, CAPABILITY_PULL_REQUESTS_WRITE),
    legal_statuses=_IMPLEMENT_STATUSES,
    requires_mirror=True,
)
WORKFLOW_DISPATCH = OperationProfile(
    name="workflow_dispatch",
    guardrail_operation="dispatch_workflow",
    capabilities=(CAPABILITY_ACTIONS_WRITE,),
    legal_statuses=_IMPLEMENT_STATUSES | {LifecycleStatus.VERIFIED},
    requires_mirror=True,
)

PROFILES: dict[str, OperationProfile] = {
    profile.name: profile
    for profile in (HANDOFF, IMPLEMENT_TRIGGER, IMPLEMENT, WORKFLOW_DISPATCH)
}


@dataclass
class PreflightResult:
    decision: Decision | None
    item: WorkItem | None = None
    repo: str = ""
    client: GitHubConnector | None = None
    operation_config: dict[str, Any] = field(default_factory=dict)
    config: EngineConfig | None = None

    @property
    def passed(self) -> bool:
        return self.decision is None

    def require_item(self) -> WorkItem:
        """The resolved work item of a passed preflight."""

        return _require_item(self.item, self.decision)

    def require_config(self) -> EngineConfig:
        if self.config is None:
            raise InternalError(
                internal_decision("PREFLIGHT_INCOMPLETE", "preflight", "no config snapshot")
            )
        return self.config


@dataclass
class _Context:
    profile: OperationProfile
    identifier: str
    request_id: str
    actor: str
    requested_repo: str
    require_mirror: bool
    acquire_client: bool
    config: EngineConfig
    item: WorkItem | None = None
    repo: str = ""
    client: GitHubConnector | None = None
    operation_config: dict[str, Any] = field(default_factory=dict)

    @property
    def resolved_item(self) -> WorkItem:
        return _require_item(self.item, None)

    def block(
        self,
        check: str,
        code: str,
        blocked_by: BlockedBy,
        next_action: str,
        details: str = "",
        missing_config: tuple[str, ...] = (),
        upstream_status: int | None = None,
    ) -> Decision:
        return Decision(
            code=code,
            phase=f"preflight.{check}",
            blocked_by=blocked_by,
            next_action=next_action,
            missing_config=missing_config,
            details_safe=safe_details(details),
            request_id=self.request_id,
            upstream_status=upstream_status,
        )


class PreflightEngine:
    """Evaluate preconditions in a fixed order; the first failure wins.

    Every evaluation reads a fresh config snapshot and a fresh work-item row, so
    calling it again after an upstream failure reports the current root cause.
    Client construction errors propagate to the caller, which decides whether
    re-evaluation explains them.
    """

    def __init__(
        self,
        db: OrchestratorDB,
        config_provider: Callable[[], EngineConfig],
        client_factory: ClientFactory,
    ) -> None:
        self.db = db
        self.config_provider = config_provider
        self.client_factory = client_factory
        self.checks: list[tuple[str, Callable[[_Context], Decision | None]]] = [
            ("stage", self._check_stage),
            ("resolve", self._check_resolve),
            ("mirror", self._check_mirror),
            ("state", self._check_state),
            ("guardrail", self._check_guardrail),
            ("operation_config", self._check_operation_config),
            ("credential", self._check_credential),
        ]

    def evaluate(
        self,
        profile: OperationProfile,
        identifier: str,
        request_id: str = "",
        actor: str = "",
        repo: str | None = None,
        require_mirror: bool | None = None,
        acquire_client: bool = True,
    ) -> PreflightResult:
        ctx = _Context(
            profile=profile,
            identifier=identifier.strip(),
            request_id=request_id,
            actor=actor,
            requested_repo=(repo or "").strip(),
            require_mirror=profile.requires_mirror if require_mirror is None else require_mirror,
            acquire_client=acquire_client,
            config=self.config_provider(),
        )
        for _name, check in self.checks:
            decision = check(ctx)
            if decision is not None:
                return PreflightResult(
                    decision=decision, item=ctx.item, repo=ctx.repo, config=ctx.config
                )
        return PreflightResult(
            decision=None,
            item=ctx.item,
            repo=ctx.repo,
            client=ctx.client,
            operation_config=ctx.operation_config,
            config=ctx.config,
        )

    def resolve(self, identifier: str, request_id: str = "") -> WorkItem | Decision:
        """Resolve a canonical id or short display id to a work item."""

        key = identifier.strip()
        with store_errors("preflight.resolve", request_id):
            row = self.db.get_work_item(key) if key else None
            if row is not None:
                matches = [row]
            else:
                matches = self.db.find_work_items_by_short_id(key) if key else []
        if len(matches) == 1:
            return WorkItem.model_validate(matches[0])
        code = "IDENTIFIER_AMBIGUOUS" if len(matches) > 1 else "ISSUE_NOT_FOUND"
        details = (
            f"{len(matches)} work items share short id {key}"
            if matches
            else f"no work item for {key or '<empty>'}"
        )
        return Decision(
            code=code,
            phase="preflight.resolve",
            blocked_by=BlockedBy.STATE,
            next_action="use_canonical_id" if matches else "check_identifier",
            details_safe=safe_details(details),
            request_id=request_id,
        )

    def _check_stage(self, ctx: _Context) -> Decision | None:
        if ctx.config.stage:
            return None
        return ctx.block(
            "stage",
            "ENGINE_MISCONFIGURED",
            BlockedBy.CONFIG,
            "configure_stage",
            "stage identifier is not configured",
            missing_config=(KEY_STAGE,),
        )

    def _check_resolve(self, ctx: _Context) -> Decision | None:
        resolved = self.resolve(ctx.identifier, ctx.request_id)
        if isinstance(resolved, Decision):
            return resolved
        ctx.item = resolved
        ctx.repo = ctx.requested_repo or resolved.repo_full_name or ""
        if not ctx.repo and ctx.profile.repo_fallback_key:
            ctx.repo = ctx.config.get(ctx.profile.repo_fallback_key) or ""
        return None

    def _check_mirror(self, ctx: _Context) -> Decision | None:
        item = ctx.resolved_item
        if not ctx.require_mirror or item.has_mirror:
            return None
        return ctx.block(
            "mirror",
            "MIRROR_MISSING",
            BlockedBy.STATE,
            "handoff_first",
            f"work item {item.short_id} has no GitHub issue mirror",
        )

    def _check_state(self, ctx: _Context) -> Decision | None:
        item = ctx.resolved_item
        legal = ctx.profile.legal_statuses
        if legal is None or item.lifecycle_status in legal:
            return None
        return ctx.block(
            "state",
            "STATE_NOT_READY",
            BlockedBy.STATE,
            "advance_lifecycle",
            f"{ctx.profile.name} not allowed from {item.lifecycle_status.value}",
        )

    def _check_guardrail(self, ctx: _Context) -> Decision | None:
        required_config = list(ctx.profile.required_config)
        if not ctx.repo and ctx.profile.repo_fallback_key:
            required_config.append(ctx.profile.repo_fallback_key)
        decision = guardrails.evaluate(
            operation=ctx.profile.guardrail_operation,
            repo=ctx.repo,
            actor=ctx.actor,
            required_capabilities=ctx.profile.capabilities,
            required_config=required_config,
            config=ctx.config,
        )
        if decision.allowed:
            return None
        return Decision(
            code=decision.code,
            phase="preflight.guardrail",
            blocked_by=decision.blocked_by or BlockedBy.POLICY,
            next_action="update_configuration"
            if decision.blocked_by == BlockedBy.CONFIG
            else "request_policy_change",
            missing_config=decision.missing_config,
            details_safe=decision.details_safe,
            request_id=ctx.request_id,
        )

    def _check_operation_config(self, ctx: _Context) -> Decision | None:
        keys = ctx.profile.trigger_keys
        if not keys:
            return None
        missing = ctx.config.missing([key for key, _default in keys])
        if len(missing) == len(keys):
            return ctx.block(
                "operation_config",
                "TRIGGER_CONFIG_MISSING",
                BlockedBy.CONFIG,
                "configure_trigger",
                "no trigger configuration present",
                missing_config=tuple(missing),
            )
        for key, default in keys:
            ctx.operation_config[key] = ctx.config.get(key) or default
        ctx.operation_config["defaulted_keys"] = list(missing)
        return None

    def acquire_client(self, repo: str, request_id: str = "") -> GitHubConnector | Decision:
        """Build a connector and prove the credential can reach ``repo``.

        ``ClientConstructionError`` and transport failures propagate.
        """

        try:
            client = self.client_factory()
            client.verify_access(repo)
        except AuthMissingError as exc:
            return Decision(
                code="AUTH_MISSING",
                phase="preflight.credential",
                blocked_by=BlockedBy.CONFIG,
                next_action="configure_github_token",
                missing_config=(KEY_WRITE_TOKEN,),
                details_safe=safe_details(str(exc)),
                request_id=request_id,
            )
        except AuthInvalidError as exc:
            return Decision(
                code="AUTH_INVALID",
                phase="preflight.credential",
                blocked_by=BlockedBy.UPSTREAM,
                next_action="rotate_github_token",
                details_safe=safe_details(exc.message),
                request_id=request_id,
                upstream_status=exc.status,
            )
        return client

    def _check_credential(self, ctx: _Context) -> Decision | None:
        if not ctx.acquire_client:
            return None
        acquired = self.acquire_client(ctx.repo, ctx.request_id)
        if isinstance(acquired, Decision):
            return acquired
        ctx.client = acquired
        return None


def _require_item(item: WorkItem | None, decision: Decision | None) -> WorkItem:
    if item is None or decision is not None:
        raise InternalError(
            internal_decision(
                "PREFLIGHT_INCOMPLETE", "preflight", "work item not resolved by preflight"
            )
        )
    return item
