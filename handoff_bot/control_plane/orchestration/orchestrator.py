"""Control flow for mutating work-item operations: preflight, execute, commit, audit."""

from __future__ import annotations

import logging
import uuid
from functools import partial
from typing import Any, Callable

from handoff_bot.control_plane.config.config_resolver import (
    KEY_IMPLEMENT_COMMENT,
    KEY_IMPLEMENT_LABEL,
    EngineConfig,
)
from handoff_bot.control_plane.db.db import OrchestratorDB, utc_now_iso
from handoff_bot.control_plane.github.github_connector import (
    ClientConstructionError,
    ClientFactory,
    GitHubConnector,
)
from handoff_bot.control_plane.models.contracts import (
    BlockedBy,
    Decision,
    ExternalResourceReference,
    HandoffState,
    LifecycleStatus,
    RunStatus,
    StepStatus,
    WorkItem,
)
from handoff_bot.control_plane.models.errors import (
    InternalError,
    OrchestrationError,
    PartialFailureError,
    PreflightBlocked,
    TransitionConflict,
    UpstreamFailure,
    internal_decision,
    store_errors,
)
from handoff_bot.control_plane.orchestration.audit import AuditRecorder
from handoff_bot.control_plane.orchestration.mutation_executor import (
    UPSTREAM_ERRORS,
    MutationExecutor,
    classify_upstream_error,
    dispatch_key,
    trigger_key,
)
from handoff_bot.control_plane.orchestration.preflight import (
    HANDOFF,
    IMPLEMENT,
    IMPLEMENT_TRIGGER,
    PROFILES,
    WORKFLOW_DISPATCH,
    OperationProfile,
    PreflightEngine,
    PreflightResult,
)
from handoff_bot.control_plane.orchestration.state_transitions import StateTransitionApplier
from handoff_bot.github.render_issue_body import issue_marker
from handoff_bot.shared.redaction import safe_details

logger = logging.getLogger(__name__)

HANDOFF_MODES = ("create", "update")


def new_request_id() -> str:
    return uuid.uuid4().hex


class Orchestrator:
    """Glue between preflight, the mutation executor, state transitions, and audit.

    Every mutating operation follows the same path: preflight (no Run on block),
    open a Run with a STARTED step, execute upstream calls, commit the new state
    together with its audit step, and close the Run. Failure paths always close
    the Run and leave the work item in a state from which a retry is possible.
    """

    def __init__(
        self,
        db: OrchestratorDB,
        config_provider: Callable[[], EngineConfig],
        client_factory: ClientFactory,
    ) -> None:
        self.db = db
        self.config_provider = config_provider
        self.audit = AuditRecorder(db)
        self.transitions = StateTransitionApplier(db, self.audit)
        self.executor = MutationExecutor(db, self.audit)
        self.preflight = PreflightEngine(db, config_provider, client_factory)

    def create_work_item(self, payload: dict[str, Any]) -> WorkItem:
        title = str(payload.get("title", "")).strip()
        if not title:
            raise ValueError("missing_title")
        with store_errors("intake.create_work_item"):
            row = self.db.create_work_item(
                title=title,
                body=str(payload.get("body", "")),
                labels=[str(label) for label in payload.get("labels", []) or []],
                priority=str(payload.get("priority", "")),
                problem=str(payload.get("problem", "")),
                scope=str(payload.get("scope", "")),
                acceptance_criteria=[
                    str(line) for line in payload.get("acceptance_criteria", []) or []
                ],
                owner=str(payload.get("owner", "")),
                repo_full_name=str(payload.get("repo", "")).strip() or None,
            )
        item = WorkItem.model_validate(row)
        logger.info("created work item %s (%s)", item.id, item.short_id)
        return item

    def get_work_item(self, identifier: str, request_id: str = "") -> WorkItem:
        resolved = self.preflight.resolve(identifier, request_id)
        if isinstance(resolved, Decision):
            raise PreflightBlocked(resolved)
        return resolved

    def list_runs(self, identifier: str, request_id: str = "") -> list[dict[str, Any]]:
        item = self.get_work_item(identifier, request_id)
        runs = []
        for run in self.audit.list_runs(item.id):
            payload = run.model_dump(mode="json")
            payload["steps"] = [
                step.model_dump(mode="json") for step in self.audit.list_steps(run.id)
            ]
            runs.append(payload)
        return runs

    def check_preflight(
        self, operation: str, identifier: str, request_id: str = "", actor: str = ""
    ) -> PreflightResult:
        """Evaluate preflight for ``operation`` without executing anything."""

        profile = PROFILES.get(operation)
        if profile is None:
            raise ValueError(f"unknown_operation:{operation}")
        request_id = request_id or new_request_id()
        evaluate = partial(
            self.preflight.evaluate, profile, identifier, request_id=request_id, actor=actor
        )
        try:
            return evaluate()
        except ClientConstructionError as exc:
            return PreflightResult(
                decision=self._client_unavailable(evaluate, exc, request_id)
            )
        except UPSTREAM_ERRORS as exc:
            return PreflightResult(
                decision=classify_upstream_error(exc, "preflight.credential", request_id)
            )

    def handoff(
        self,
        identifier: str,
        request_id: str = "",
        actor: str = "",
        mode: str = "create",
        repo: str | None = None,
    ) -> dict[str, Any]:
        if mode not in HANDOFF_MODES:
            raise ValueError(f"invalid_handoff_mode:{mode}")
        request_id = request_id or new_request_id()
        evaluate = partial(
            self.preflight.evaluate,
            HANDOFF,
            identifier,
            request_id=request_id,
            actor=actor,
            repo=repo,
            require_mirror=mode == "update",
        )
        result = self._run_preflight(HANDOFF, identifier, evaluate, request_id, actor)
        item = result.require_item()

        if self._is_handoff_noop(item, mode):
            self.audit.append_event(
                "handoff_noop",
                {
                    "work_item_id": item.id,
                    "mode": mode,
                    "handoff_state": item.handoff_state.value,
                    "request_id": request_id,
                    "actor": actor,
                },
            )
            logger.info("handoff of %s is a no-op (%s)", item.id, item.handoff_state.value)
            return _handoff_payload(item, noop=True, reused=True)

        if item.handoff_state == HandoffState.PENDING:
            raise TransitionConflict(
                Decision(
                    code="HANDOFF_IN_PROGRESS",
                    phase="state_transition",
                    blocked_by=BlockedBy.STATE,
                    next_action="retry_later",
                    details_safe=f"work item {item.short_id} has a handoff in flight",
                    request_id=request_id,
                    retryable=True,
                )
            )

        client = self._acquire_client(HANDOFF, identifier, evaluate, result, request_id, actor)
        run = self.audit.open_run("handoff", item.id, request_id, actor)
        try:
            item = self.transitions.begin_handoff(
                item,
                request_id,
                actor,
                audit_step={
                    "run_id": run.id,
                    "step_id": "handoff",
                    "step_name": "handoff",
                    "status": StepStatus.STARTED,
                    "evidence": {
                        "mode": mode,
                        "repo": result.repo,
                        "from_handoff_state": item.handoff_state.value,
                    },
                },
            )
        except OrchestrationError as exc:
            self._fail_run(run.id, "handoff", exc.decision)
            raise

        try:
            evidence = self.executor.handoff_issue(client, item, result.repo, run.id)
        except Exception as exc:
            error = self._failure_error(exc, "execute.handoff", evaluate, request_id)
            self._record_handoff_failure(item, run.id, error.decision, request_id)
            raise error from exc

        target_handoff = (
            HandoffState.SYNCHRONIZED if evidence["action"] == "update" else HandoffState.SYNCED
        )
        # A synced mirror means the work item is no longer a draft.
        target_status = (
            LifecycleStatus.SPEC_READY
            if item.lifecycle_status == LifecycleStatus.CREATED
            else None
        )
        now = utc_now_iso()
        fields = {
            "repo_full_name": result.repo,
            "external_issue_number": evidence["issue_number"],
            "external_issue_url": evidence["issue_url"],
            "last_error": None,
            "last_synced_at": now,
        }
        if evidence["action"] == "create":
            fields["handoff_at"] = now
        ref = ExternalResourceReference(
            kind="issue",
            repo=result.repo,
            number=evidence["issue_number"],
            url=evidence["issue_url"],
        )
        item = self._commit(
            item,
            run.id,
            ref,
            request_id,
            actor,
            target_status=target_status,
            target_handoff=target_handoff,
            fields=fields,
        )
        return _handoff_payload(item, noop=False, reused=bool(evidence["reused"]), run_id=run.id)

    def trigger_implementation(
        self,
        identifier: str,
        request_id: str = "",
        actor: str = "",
        disambiguator: str = "",
    ) -> dict[str, Any]:
        request_id = request_id or new_request_id()
        evaluate = partial(
            self.preflight.evaluate,
            IMPLEMENT_TRIGGER,
            identifier,
            request_id=request_id,
            actor=actor,
        )
        result = self._run_preflight(IMPLEMENT_TRIGGER, identifier, evaluate, request_id, actor)
        item = result.require_item()

        key = trigger_key(item, IMPLEMENT_TRIGGER.name, disambiguator)
        prior = self.executor.find_prior_trigger(item, key)
        if prior is not None:
            self.audit.append_event(
                "already_triggered",
                {
                    "work_item_id": item.id,
                    "idempotency_key": key,
                    "run_id": prior.run_id,
                    "request_id": request_id,
                    "actor": actor,
                },
            )
            logger.info("trigger for %s already applied in run %s", item.id, prior.run_id)
            return {
                "status": "ALREADY_TRIGGERED",
                "work_item_id": item.id,
                "idempotency_key": key,
                "label_applied": bool(prior.evidence.get("label_applied")),
                "comment_posted": bool(prior.evidence.get("comment_posted")),
                "run_id": prior.run_id,
            }

        client = self._acquire_client(
            IMPLEMENT_TRIGGER, identifier, evaluate, result, request_id, actor
        )
        previous_status = item.lifecycle_status
        run = self.audit.open_run(IMPLEMENT_TRIGGER.name, item.id, request_id, actor)
        try:
            item = self.transitions.apply(
                item,
                target_status=LifecycleStatus.IMPLEMENTING,
                request_id=request_id,
                actor=actor,
                audit_step={
                    "run_id": run.id,
                    "step_id": "trigger",
                    "step_name": "trigger",
                    "status": StepStatus.STARTED,
                    "evidence": {"idempotency_key": key, "previous_status": previous_status.value},
                },
            )
        except OrchestrationError as exc:
            self._fail_run(run.id, "trigger", exc.decision)
            raise

        label = str(result.operation_config.get(KEY_IMPLEMENT_LABEL, ""))
        comment = _render_comment(
            str(result.operation_config.get(KEY_IMPLEMENT_COMMENT, "")), item
        )
        try:
            evidence = self.executor.apply_trigger(
                client, item, result.repo, label, comment, key, run.id
            )
        except Exception as exc:
            error = self._failure_error(exc, "execute.trigger", evaluate, request_id)
            self._restore_status(
                item, previous_status, run.id, "trigger", error.decision, request_id
            )
            raise error from exc

        self._close_done(
            run.id,
            ExternalResourceReference(
                kind="trigger", repo=result.repo, number=item.external_issue_number
            ),
            request_id,
        )
        return {
            "status": "TRIGGERED",
            "work_item_id": item.id,
            "idempotency_key": key,
            "label_applied": evidence["label_applied"],
            "comment_posted": evidence["comment_posted"],
            "run_id": run.id,
        }

    def implement(
        self,
        identifier: str,
        request_id: str = "",
        actor: str = "",
        base_branch: str | None = None,
        pr_title: str | None = None,
        pr_body: str | None = None,
    ) -> dict[str, Any]:
        request_id = request_id or new_request_id()
        evaluate = partial(
            self.preflight.evaluate, IMPLEMENT, identifier, request_id=request_id, actor=actor
        )
        result = self._run_preflight(IMPLEMENT, identifier, evaluate, request_id, actor)
        item = result.require_item()
        config = result.require_config()
        client = self._acquire_client(IMPLEMENT, identifier, evaluate, result, request_id, actor)

        base = (base_branch or "").strip() or config.base_branch
        title = (pr_title or "").strip() or f"{item.title} (#{item.external_issue_number})"
        body = pr_body or f"Closes #{item.external_issue_number}\n\n{issue_marker(item.id)}\n"
        run = self.audit.open_run(IMPLEMENT.name, item.id, request_id, actor)
        self.audit.record_step(
            run.id, "implement", "implement", StepStatus.STARTED, {"base": base, "repo": result.repo}
        )

        try:
            evidence = self.executor.ensure_branch_and_pull_request(
                client,
                item,
                result.repo,
                base,
                config.branch_prefix,
                title,
                body,
                run.id,
                request_id=request_id,
            )
        except Exception as exc:
            error = self._failure_error(exc, "execute.implement", evaluate, request_id)
            self._fail_run(run.id, "implement", error.decision)
            self._record_last_error(item, error.decision, request_id)
            raise error from exc

        ref = ExternalResourceReference(
            kind="pull_request",
            repo=result.repo,
            number=evidence["pr_number"],
            url=evidence["pr_url"],
            branch=evidence["branch"],
        )
        item = self._commit(
            item,
            run.id,
            ref,
            request_id,
            actor,
            target_status=LifecycleStatus.PR_CREATED,
            fields={
                "pr_number": evidence["pr_number"],
                "pr_url": evidence["pr_url"],
                "branch_name": evidence["branch"],
                "last_error": None,
            },
        )
        return {
            "work_item_id": item.id,
            "pr": {"number": evidence["pr_number"], "url": evidence["pr_url"]},
            "branch": evidence["branch"],
            "created": evidence["created"],
            "reconciled": evidence["reconciled"],
            "lifecycle_status": item.lifecycle_status.value,
            "run_id": run.id,
        }

    def dispatch_workflow(
        self,
        identifier: str,
        workflow: str,
        ref: str | None = None,
        inputs: dict[str, Any] | None = None,
        request_id: str = "",
        actor: str = "",
    ) -> dict[str, Any]:
        workflow = workflow.strip()
        if not workflow:
            raise ValueError("missing_workflow")
        request_id = request_id or new_request_id()
        evaluate = partial(
            self.preflight.evaluate,
            WORKFLOW_DISPATCH,
            identifier,
            request_id=request_id,
            actor=actor,
        )
        result = self._run_preflight(WORKFLOW_DISPATCH, identifier, evaluate, request_id, actor)
        item = result.require_item()
        config = result.require_config()

        target_ref = (ref or "").strip() or item.branch_name or config.base_branch
        workflow_inputs = dict(inputs or {})
        key = dispatch_key(item.id, workflow, target_ref, workflow_inputs)
        prior = self.executor.find_prior_dispatch(item, key)
        if prior is not None and prior.evidence.get("workflow_run_id") is not None:
            logger.info("workflow %s for %s already dispatched in run %s", workflow, item.id, prior.run_id)
            return {
                "work_item_id": item.id,
                "workflow_run_id": prior.evidence.get("workflow_run_id"),
                "existing": True,
                "correlation_key": key,
                "run_id": prior.run_id,
            }

        client = self._acquire_client(
            WORKFLOW_DISPATCH, identifier, evaluate, result, request_id, actor
        )
        if prior is not None:
            # Dispatched before, but the run id lookup never completed.
            return self._resolve_prior_dispatch(
                client,
                item,
                result.repo,
                workflow,
                target_ref,
                key,
                prior.run_id,
                evaluate,
                request_id,
                actor,
            )
        run = self.audit.open_run(WORKFLOW_DISPATCH.name, item.id, request_id, actor)
        self.audit.record_step(
            run.id,
            "workflow",
            "workflow_dispatch",
            StepStatus.STARTED,
            {"workflow": workflow, "ref": target_ref, "correlation_key": key},
        )
        try:
            evidence = self.executor.dispatch_workflow(
                client, result.repo, workflow, target_ref, workflow_inputs, key, run.id
            )
        except Exception as exc:
            error = self._failure_error(exc, "execute.workflow_dispatch", evaluate, request_id)
            self._fail_run(run.id, "workflow", error.decision)
            raise error from exc
        self._close_done(
            run.id,
            ExternalResourceReference(kind="workflow_run", repo=result.repo, branch=target_ref),
            request_id,
        )
        return {
            "work_item_id": item.id,
            "workflow_run_id": evidence["workflow_run_id"],
            "existing": False,
            "correlation_key": key,
            "run_id": run.id,
        }

    def poll_workflow_run(
        self,
        identifier: str,
        workflow_run_id: int,
        request_id: str = "",
        actor: str = "",
    ) -> dict[str, Any]:
        request_id = request_id or new_request_id()
        evaluate = partial(
            self.preflight.evaluate,
            WORKFLOW_DISPATCH,
            identifier,
            request_id=request_id,
            actor=actor,
        )
        result = self._run_preflight(WORKFLOW_DISPATCH, identifier, evaluate, request_id, actor)
        item = result.require_item()
        client = self._acquire_client(
            WORKFLOW_DISPATCH, identifier, evaluate, result, request_id, actor
        )

        run = self.audit.open_run("workflow_poll", item.id, request_id, actor)
        self.audit.record_step(
            run.id,
            "workflow_poll",
            "workflow_poll",
            StepStatus.STARTED,
            {"workflow_run_id": workflow_run_id},
        )
        try:
            polled = self.executor.poll_workflow_run(
                client, result.repo, int(workflow_run_id), run.id
            )
        except Exception as exc:
            error = self._failure_error(exc, "execute.workflow_poll", evaluate, request_id)
            self._fail_run(run.id, "workflow_poll", error.decision)
            raise error from exc
        self._close_done(
            run.id,
            ExternalResourceReference(kind="workflow_run", repo=result.repo, number=workflow_run_id),
            request_id,
        )
        polled["work_item_id"] = item.id
        polled["run_id"] = run.id
        return polled

    def _resolve_prior_dispatch(
        self,
        client: GitHubConnector,
        item: WorkItem,
        repo: str,
        workflow: str,
        target_ref: str,
        key: str,
        dispatch_run_id: str,
        evaluate: Callable[..., PreflightResult],
        request_id: str,
        actor: str,
    ) -> dict[str, Any]:
        run = self.audit.open_run(WORKFLOW_DISPATCH.name, item.id, request_id, actor)
        self.audit.record_step(
            run.id,
            "workflow_run",
            "resolve_workflow_run",
            StepStatus.STARTED,
            {"workflow": workflow, "ref": target_ref, "dispatch_run_id": dispatch_run_id},
        )
        try:
            evidence = self.executor.resolve_workflow_run(
                client, repo, workflow, target_ref, key, run.id
            )
        except Exception as exc:
            error = self._failure_error(exc, "execute.workflow_lookup", evaluate, request_id)
            self._fail_run(run.id, "workflow_run", error.decision)
            raise error from exc
        self._close_done(
            run.id,
            ExternalResourceReference(kind="workflow_run", repo=repo, branch=target_ref),
            request_id,
        )
        logger.info(
            "resolved workflow run %s for dispatch in run %s",
            evidence["workflow_run_id"],
            dispatch_run_id,
        )
        return {
            "work_item_id": item.id,
            "workflow_run_id": evidence["workflow_run_id"],
            "existing": True,
            "correlation_key": key,
            "run_id": dispatch_run_id,
        }

    def transition_lifecycle(
        self,
        identifier: str,
        target: str,
        request_id: str = "",
        actor: str = "",
    ) -> WorkItem:
        try:
            target_status = LifecycleStatus(str(target).strip().upper())
        except ValueError as exc:
            raise ValueError(f"invalid_lifecycle_status:{target}") from exc
        item = self.get_work_item(identifier, request_id)
        return self.transitions.apply(
            item, target_status=target_status, request_id=request_id, actor=actor
        )

    def recover_stale_pending(self, older_than_s: float, request_id: str = "") -> list[WorkItem]:
        recovered = self.transitions.recover_stale_pending(older_than_s, request_id)
        for item in recovered:
            logger.info("recovered stale pending handoff for %s", item.id)
        return recovered

    def _run_preflight(
        self,
        profile: OperationProfile,
        identifier: str,
        evaluate: Callable[..., PreflightResult],
        request_id: str,
        actor: str,
    ) -> PreflightResult:
        """Preflight without credential acquisition; raise on block."""

        try:
            result = evaluate(acquire_client=False)
        except ClientConstructionError as exc:
            result = PreflightResult(decision=self._client_unavailable(evaluate, exc, request_id))
        except UPSTREAM_ERRORS as exc:
            raise UpstreamFailure(
                classify_upstream_error(exc, "preflight.credential", request_id)
            ) from exc
        if result.decision is not None:
            self._record_blocked(profile, identifier, result.decision, actor)
            raise PreflightBlocked(result.decision)
        return result

    def _acquire_client(
        self,
        profile: OperationProfile,
        identifier: str,
        evaluate: Callable[..., PreflightResult],
        result: PreflightResult,
        request_id: str,
        actor: str,
    ) -> GitHubConnector:
        """Run the credential precondition deferred by ``_run_preflight``."""

        if result.client is not None:
            return result.client
        try:
            acquired = self.preflight.acquire_client(result.repo, request_id)
        except ClientConstructionError as exc:
            acquired = self._client_unavailable(evaluate, exc, request_id)
        except UPSTREAM_ERRORS as exc:
            raise UpstreamFailure(
                classify_upstream_error(exc, "preflight.credential", request_id)
            ) from exc
        if isinstance(acquired, Decision):
            self._record_blocked(profile, identifier, acquired, actor)
            raise PreflightBlocked(acquired)
        result.client = acquired
        return acquired

    def _client_unavailable(
        self,
        evaluate: Callable[..., PreflightResult],
        exc: Exception,
        request_id: str,
    ) -> Decision:
        """Re-evaluate preflight on a fresh snapshot to find the true root cause."""

        logger.warning("GitHub client construction failed: %s", safe_details(str(exc)))
        recheck = evaluate(acquire_client=False)
        if recheck.decision is not None:
            return recheck.decision
        return Decision(
            code="CLIENT_UNAVAILABLE",
            phase="preflight.credential",
            blocked_by=BlockedBy.CONFIG,
            next_action="check_github_connector",
            details_safe=safe_details(str(exc)),
            request_id=request_id,
        )

    def _failure_error(
        self,
        exc: Exception,
        phase: str,
        evaluate: Callable[..., PreflightResult],
        request_id: str,
    ) -> OrchestrationError:
        if isinstance(exc, OrchestrationError):
            return exc
        if isinstance(exc, ClientConstructionError):
            return PreflightBlocked(self._client_unavailable(evaluate, exc, request_id))
        if isinstance(exc, UPSTREAM_ERRORS):
            decision = classify_upstream_error(exc, phase, request_id)
            logger.warning("upstream failure during %s: %s", phase, decision.code)
            return UpstreamFailure(decision)
        logger.exception("unexpected failure during %s", phase)
        return InternalError(internal_decision("UNEXPECTED_FAILURE", phase, str(exc), request_id))

    def _fail_run(self, run_id: str, step_id: str, decision: Decision) -> None:
        message = _error_message(decision)
        try:
            self.audit.record_step(**_failed_step(run_id, step_id, decision))
            self.audit.close_run(run_id, RunStatus.FAILED, message)
        except OrchestrationError:
            logger.exception("could not finalise failed run %s", run_id)

    def _close_failed(self, run_id: str, decision: Decision) -> None:
        try:
            self.audit.close_run(run_id, RunStatus.FAILED, _error_message(decision))
        except OrchestrationError:
            logger.exception("could not close failed run %s", run_id)

    def _record_handoff_failure(
        self, item: WorkItem, run_id: str, decision: Decision, request_id: str
    ) -> None:
        """Move PENDING to FAILED together with the FAILED step, then close the Run."""

        try:
            self.transitions.fail_handoff(
                item,
                _error_message(decision),
                request_id,
                audit_step=_failed_step(run_id, "handoff", decision),
            )
        except OrchestrationError:
            logger.exception("could not mark handoff of %s as failed", item.id)
            self._fail_run(run_id, "handoff", decision)
            return
        self._close_failed(run_id, decision)

    def _restore_status(
        self,
        item: WorkItem,
        previous_status: LifecycleStatus,
        run_id: str,
        step_id: str,
        decision: Decision,
        request_id: str,
    ) -> None:
        """Give up the claimed status together with the FAILED step, then close the Run."""

        try:
            self.transitions.apply(
                item,
                target_status=previous_status,
                fields={"last_error": _error_message(decision)},
                request_id=request_id,
                audit_step=_failed_step(run_id, step_id, decision),
            )
        except OrchestrationError:
            logger.exception("could not restore %s to %s", item.id, previous_status.value)
            self._fail_run(run_id, step_id, decision)
            return
        self._close_failed(run_id, decision)

    def _record_last_error(self, item: WorkItem, decision: Decision, request_id: str) -> None:
        try:
            self.transitions.apply(
                item,
                fields={"last_error": _error_message(decision)},
                request_id=request_id,
            )
        except OrchestrationError:
            logger.exception("could not record last error for %s", item.id)

    def _commit(
        self,
        item: WorkItem,
        run_id: str,
        ref: ExternalResourceReference,
        request_id: str,
        actor: str,
        target_status: LifecycleStatus | None = None,
        target_handoff: HandoffState | None = None,
        fields: dict[str, Any] | None = None,
    ) -> WorkItem:
        """Write back the external reference and close the Run.

        The upstream effect already happened, so any failure here surfaces as a
        partial failure carrying the reference for a later retry to reuse. A
        version conflict is reconciled once before giving up.
        """

        audit_step = {
            "run_id": run_id,
            "step_id": "commit",
            "step_name": "commit_state",
            "status": StepStatus.SUCCEEDED,
            "evidence": ref.model_dump(mode="json"),
        }
        transition = partial(
            self.transitions.apply,
            target_status=target_status,
            target_handoff=target_handoff,
            fields=fields,
            request_id=request_id,
            actor=actor,
        )
        try:
            try:
                updated = transition(item, audit_step=audit_step)
            except TransitionConflict as exc:
                if exc.code != "CONCURRENT_MODIFICATION":
                    raise
                updated = self._reconcile_commit(item, ref, transition, audit_step, request_id)
            self.audit.close_run(run_id, RunStatus.DONE)
        except OrchestrationError as exc:
            self._fail_run(run_id, "commit", exc.decision)
            raise self._partial_failure(exc, ref, request_id) from exc
        return updated

    def _reconcile_commit(
        self,
        item: WorkItem,
        ref: ExternalResourceReference,
        transition: Callable[..., WorkItem],
        audit_step: dict[str, Any],
        request_id: str,
    ) -> WorkItem:
        """Adopt a concurrent writer's identical commit, or re-apply once on a fresh row."""

        current = self.get_work_item(item.id, request_id)
        if _already_committed(current, ref):
            logger.info(
                "work item %s already carries %s %s; adopting concurrent commit",
                current.id,
                ref.kind,
                ref.number,
            )
            self.audit.record_step(
                **{**audit_step, "evidence": {**audit_step["evidence"], "adopted": True}}
            )
            return current
        logger.info(
            "work item %s moved from version %s to %s; re-applying commit",
            item.id,
            item.version,
            current.version,
        )
        return transition(current, audit_step=audit_step)

    def _close_done(self, run_id: str, ref: ExternalResourceReference, request_id: str) -> None:
        try:
            self.audit.close_run(run_id, RunStatus.DONE)
        except OrchestrationError as exc:
            raise self._partial_failure(exc, ref, request_id) from exc

    def _partial_failure(
        self, exc: OrchestrationError, ref: ExternalResourceReference, request_id: str
    ) -> PartialFailureError:
        logger.error(
            "upstream %s in %s succeeded but commit failed: %s", ref.kind, ref.repo, exc.code
        )
        return PartialFailureError(
            internal_decision(
                "PARTIAL_FAILURE",
                "commit",
                f"{ref.kind} applied upstream; state not committed ({exc.code})",
                request_id,
            ),
            external_ref=ref,
        )

    def _record_blocked(
        self, profile: OperationProfile, identifier: str, decision: Decision, actor: str
    ) -> None:
        logger.warning(
            "preflight blocked %s for %s: %s (%s)",
            profile.name,
            identifier,
            decision.code,
            decision.blocked_by.value,
        )
        self.audit.append_event(
            "preflight_blocked",
            {
                "operation": profile.name,
                "identifier": identifier,
                "code": decision.code,
                "phase": decision.phase,
                "blocked_by": decision.blocked_by.value,
                "missing_config": list(decision.missing_config),
                "request_id": decision.request_id,
                "actor": actor,
            },
        )

    @staticmethod
    def _is_handoff_noop(item: WorkItem, mode: str) -> bool:
        if mode == "create":
            return item.handoff_state in (HandoffState.SYNCED, HandoffState.SYNCHRONIZED)
        return item.handoff_state == HandoffState.SYNCHRONIZED


def _error_message(decision: Decision) -> str:
    return f"{decision.code}: {decision.details_safe}".rstrip(": ")


def _failed_step(run_id: str, step_id: str, decision: Decision) -> dict[str, Any]:
    return {
        "run_id": run_id,
        "step_id": step_id,
        "step_name": step_id,
        "status": StepStatus.FAILED,
        "evidence": {"code": decision.code, "blocked_by": decision.blocked_by.value},
        "error_message": _error_message(decision),
    }


def _already_committed(item: WorkItem, ref: ExternalResourceReference) -> bool:
    if ref.kind == "pull_request":
        return item.pr_number == ref.number and item.branch_name == ref.branch
    if ref.kind == "issue":
        return (
            item.external_issue_number == ref.number
            and item.repo_full_name == ref.repo
            and item.handoff_state in (HandoffState.SYNCED, HandoffState.SYNCHRONIZED)
        )
    return False


def _render_comment(template: str, item: WorkItem) -> str:
    if not template:
        return ""
    try:
        return template.format(
            issue_number=item.external_issue_number,
            short_id=item.short_id,
            title=item.title,
            work_item_id=item.id,
        )
    except (KeyError, IndexError, ValueError):
        logger.warning("trigger comment template has unknown placeholders; posting verbatim")
        return template


def _handoff_payload(
    item: WorkItem, noop: bool, reused: bool, run_id: str | None = None
) -> dict[str, Any]:
    return {
        "work_item_id": item.id,
        "handoff_state": item.handoff_state.value,
        "lifecycle_status": item.lifecycle_status.value,
        "external_issue_number": item.external_issue_number,
        "external_issue_url": item.external_issue_url,
        "noop": noop,
        "reused": reused,
        "run_id": run_id,
    }
