"""Create-or-reuse GitHub mutations keyed for safe retries and races."""

from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Any, Callable, TypeVar

from handoff_bot.control_plane.db.db import OrchestratorDB
from handoff_bot.control_plane.github.github_connector import (
    AlreadyExistsError,
    AuthInvalidError,
    GitHubAPIError,
    GitHubConnector,
    RetryableGitHubError,
)
from handoff_bot.control_plane.models.contracts import (
    BlockedBy,
    Decision,
    RunStep,
    StepStatus,
    WorkItem,
)
from handoff_bot.control_plane.models.errors import (
    InternalError,
    ReconciliationConflict,
    store_errors,
)
from handoff_bot.control_plane.orchestration.audit import AuditRecorder
from handoff_bot.github.render_issue_body import issue_labels, issue_marker, render_issue_body
from handoff_bot.shared.redaction import safe_details

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRIGGER_KEY_FIELD = "idempotency_key"
DISPATCH_KEY_FIELD = "correlation_key"

# Run types whose SUCCEEDED steps are scanned for idempotency keys.
TRIGGER_RUN_TYPE = "implement_trigger"
DISPATCH_RUN_TYPE = "workflow_dispatch"


def trigger_key(item: WorkItem, operation: str, disambiguator: str = "") -> str:
    material = "|".join([item.id, operation, item.spec_hash(), disambiguator])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]


def dispatch_key(work_item_id: str, workflow: str, ref: str, inputs: dict[str, Any]) -> str:
    material = json.dumps(
        {"work_item_id": work_item_id, "workflow": workflow, "ref": ref, "inputs": inputs},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def branch_name(prefix: str, issue_number: int, short_id: str) -> str:
    return f"{prefix.strip('/')}/issue-{issue_number}-{short_id}"


def classify_upstream_error(exc: Exception, phase: str, request_id: str = "") -> Decision:
    """Map a connector exception to the UPSTREAM decision a caller sees."""

    if isinstance(exc, RetryableGitHubError):
        return Decision(
            code="UPSTREAM_UNREACHABLE",
            phase=phase,
            blocked_by=BlockedBy.UPSTREAM,
            next_action="retry",
            details_safe=safe_details(f"{exc.reason_code}: {exc}"),
            request_id=request_id,
            retryable=True,
        )
    if isinstance(exc, AuthInvalidError) or (
        isinstance(exc, GitHubAPIError) and exc.status in {401, 403}
    ):
        code, next_action = "AUTH_INVALID", "rotate_github_token"
    elif isinstance(exc, GitHubAPIError) and exc.status == 404:
        code, next_action = "TARGET_NOT_FOUND", "check_target"
    elif isinstance(exc, GitHubAPIError) and exc.status == 422:
        code, next_action = "VALIDATION_FAILED", "fix_request"
    elif isinstance(exc, GitHubAPIError):
        code, next_action = "UPSTREAM_REJECTED", "check_upstream"
    else:
        return Decision(
            code="UPSTREAM_UNREACHABLE",
            phase=phase,
            blocked_by=BlockedBy.UPSTREAM,
            next_action="retry",
            details_safe=safe_details(str(exc)),
            request_id=request_id,
            retryable=True,
        )
    return Decision(
        code=code,
        phase=phase,
        blocked_by=BlockedBy.UPSTREAM,
        next_action=next_action,
        details_safe=safe_details(exc.message),
        request_id=request_id,
        upstream_status=exc.status,
    )


UPSTREAM_ERRORS = (GitHubAPIError, RetryableGitHubError, TimeoutError, ConnectionError)


class MutationExecutor:
    """Perform exactly one of create or reuse for each external resource.

    Each method records a SUCCEEDED step for every upstream call it completes
    and lets connector exceptions propagate unchanged; the caller classifies
    them and records the failure.
    """

    def __init__(self, db: OrchestratorDB, audit: AuditRecorder) -> None:
        self.db = db
        self.audit = audit

    def handoff_issue(
        self,
        client: GitHubConnector,
        item: WorkItem,
        repo: str,
        run_id: str,
    ) -> dict[str, Any]:
        title = item.title.strip() or f"Work item {item.short_id}"
        body = render_issue_body(item)
        labels = issue_labels(item)

        if item.external_issue_number and item.repo_full_name == repo:
            issue = self._call(
                "issue_update",
                lambda: client.update_issue(repo, item.external_issue_number, title, body, labels),
            )
            evidence = {
                "action": "update",
                "repo": repo,
                "issue_number": issue.get("number") or item.external_issue_number,
                "issue_url": issue.get("url") or item.external_issue_url,
                "reused": True,
            }
            self.audit.record_step(run_id, "issue", "update_issue", StepStatus.SUCCEEDED, evidence)
            return evidence

        marker = issue_marker(item.id)
        existing = self._call("issue_search", lambda: client.search_issues(repo, marker))
        if existing:
            issue = min(existing, key=lambda row: int(row.get("number") or 0))
            reused = True
            logger.info("adopting issue %s#%s for work item %s", repo, issue["number"], item.id)
        else:
            issue = self._call(
                "issue_create", lambda: client.create_issue(repo, title, body, labels)
            )
            reused = False
        evidence = {
            "action": "create",
            "repo": repo,
            "issue_number": issue.get("number"),
            "issue_url": issue.get("url"),
            "reused": reused,
            "marker": marker,
        }
        self.audit.record_step(run_id, "issue", "create_issue", StepStatus.SUCCEEDED, evidence)
        return evidence

    def find_prior_trigger(self, item: WorkItem, key: str, limit: int = 20) -> RunStep | None:
        return self.audit.find_succeeded_step(
            item.id, TRIGGER_KEY_FIELD, key, limit=limit, run_type=TRIGGER_RUN_TYPE
        )

    def apply_trigger(
        self,
        client: GitHubConnector,
        item: WorkItem,
        repo: str,
        label: str,
        comment: str,
        key: str,
        run_id: str,
    ) -> dict[str, Any]:
        issue_number = int(item.external_issue_number or 0)
        label_applied = False
        if label:
            self._call("trigger_label", lambda: client.add_labels(repo, issue_number, [label]))
            label_applied = True
        comment_posted = False
        if comment:
            self._call("trigger_comment", lambda: client.create_comment(repo, issue_number, comment))
            comment_posted = True
        evidence = {
            TRIGGER_KEY_FIELD: key,
            "repo": repo,
            "issue_number": issue_number,
            "label": label,
            "label_applied": label_applied,
            "comment_posted": comment_posted,
        }
        self.audit.record_step(run_id, "trigger", "apply_trigger", StepStatus.SUCCEEDED, evidence)
        return evidence

    def ensure_branch_and_pull_request(
        self,
        client: GitHubConnector,
        item: WorkItem,
        repo: str,
        base_branch: str,
        prefix: str,
        title: str,
        body: str,
        run_id: str,
        request_id: str = "",
    ) -> dict[str, Any]:
        branch = branch_name(prefix, int(item.external_issue_number or 0), item.short_id)

        base = self._call("get_ref", lambda: client.get_ref(repo, base_branch))
        self.audit.record_step(
            run_id,
            "base_ref",
            "get_base_ref",
            StepStatus.SUCCEEDED,
            {"base": base_branch, "sha": base.get("sha")},
        )

        try:
            self._call("create_ref", lambda: client.create_ref(repo, branch, str(base.get("sha"))))
            branch_created = True
        except AlreadyExistsError:
            branch_created = False
            logger.info("branch %s already exists in %s; reusing", branch, repo)
        self.audit.record_step(
            run_id,
            "branch",
            "create_branch",
            StepStatus.SUCCEEDED,
            {"branch": branch, "created": branch_created},
        )

        head = f"{repo.split('/', 1)[0]}:{branch}"
        pr = self._find_pull_request(client, repo, head, base_branch)
        created = False
        reconciled = False
        if pr is None:
            try:
                pr = self._call(
                    "pull_request_create",
                    lambda: client.create_pull_request(repo, head, base_branch, title, body),
                )
                created = True
            except AlreadyExistsError as exc:
                pr = self._find_pull_request(client, repo, head, base_branch)
                if pr is None:
                    raise ReconciliationConflict(
                        Decision(
                            code="EXISTS_BUT_NOT_FOUND",
                            phase="execute.pull_request",
                            blocked_by=BlockedBy.UPSTREAM,
                            next_action="inspect_upstream",
                            details_safe=safe_details(
                                f"pull request for {head} reported existing but not found: {exc.message}"
                            ),
                            request_id=request_id,
                            upstream_status=exc.status,
                        )
                    ) from exc
                reconciled = True
                logger.info("adopted pull request %s#%s after conflict", repo, pr.get("number"))
        evidence = {
            "branch": branch,
            "base": base_branch,
            "pr_number": pr.get("number"),
            "pr_url": pr.get("url"),
            "created": created,
            "reconciled": reconciled,
        }
        self.audit.record_step(
            run_id, "pull_request", "ensure_pull_request", StepStatus.SUCCEEDED, evidence
        )
        return evidence

    def find_prior_dispatch(self, item: WorkItem, key: str, limit: int = 20) -> RunStep | None:
        return self.audit.find_succeeded_step(
            item.id, DISPATCH_KEY_FIELD, key, limit=limit, run_type=DISPATCH_RUN_TYPE
        )

    def dispatch_workflow(
        self,
        client: GitHubConnector,
        repo: str,
        workflow: str,
        ref: str,
        inputs: dict[str, Any],
        key: str,
        run_id: str,
    ) -> dict[str, Any]:
        """Dispatch once, then look up the run id the dispatch produced.

        The keyed SUCCEEDED step is written as soon as the dispatch returns, so a
        failed lookup never leads a retry to dispatch again.
        """

        self._call("workflow_dispatch", lambda: client.dispatch_workflow(repo, workflow, ref, inputs))
        self.audit.record_step(
            run_id,
            "workflow",
            "dispatch_workflow",
            StepStatus.SUCCEEDED,
            {
                DISPATCH_KEY_FIELD: key,
                "repo": repo,
                "workflow": workflow,
                "ref": ref,
                "workflow_run_id": None,
            },
        )
        return self.resolve_workflow_run(client, repo, workflow, ref, key, run_id)

    def resolve_workflow_run(
        self,
        client: GitHubConnector,
        repo: str,
        workflow: str,
        ref: str,
        key: str,
        run_id: str,
    ) -> dict[str, Any]:
        runs = self._call("workflow_list", lambda: client.list_workflow_runs(repo, workflow, ref))
        newest = max(runs, key=lambda run: str(run.get("created_at", "")), default=None)
        evidence = {
            DISPATCH_KEY_FIELD: key,
            "repo": repo,
            "workflow": workflow,
            "ref": ref,
            "workflow_run_id": newest.get("id") if newest else None,
            "workflow_run_url": newest.get("url") if newest else None,
        }
        self.audit.record_step(
            run_id, "workflow_run", "resolve_workflow_run", StepStatus.SUCCEEDED, evidence
        )
        return evidence

    def poll_workflow_run(
        self,
        client: GitHubConnector,
        repo: str,
        workflow_run_id: int,
        run_id: str,
    ) -> dict[str, Any]:
        run = self._call("workflow_poll", lambda: client.get_workflow_run(repo, workflow_run_id))
        status = str(run.get("status") or "").lower()
        conclusion = str(run.get("conclusion") or "").lower() or None
        jobs = self._call("workflow_jobs", lambda: client.list_run_jobs(repo, workflow_run_id))
        artifacts = self._call(
            "workflow_artifacts", lambda: client.list_run_artifacts(repo, workflow_run_id)
        )
        result = {
            "workflow_run_id": workflow_run_id,
            "status": status,
            "conclusion": conclusion,
            "terminal": status == "completed",
            "jobs": jobs,
            "artifacts": artifacts,
        }
        self.audit.record_step(
            run_id,
            "workflow_poll",
            "poll_workflow_run",
            StepStatus.SUCCEEDED,
            {
                "workflow_run_id": workflow_run_id,
                "status": status,
                "conclusion": conclusion,
                "job_count": len(jobs),
                "artifact_count": len(artifacts),
            },
        )
        return result

    def _find_pull_request(
        self, client: GitHubConnector, repo: str, head: str, base: str
    ) -> dict[str, Any] | None:
        for state in ("open", "all"):
            matches = self._call(
                "pull_request_search",
                lambda: client.list_pull_requests(repo, head=head, base=base, state=state),
            )
            if matches:
                return max(matches, key=lambda row: str(row.get("created_at", "")))
        return None

    def _call(self, family: str, fn: Callable[[], T]) -> T:
        started = time.perf_counter()
        outcome = "failure"
        try:
            result = fn()
            outcome = "success"
            return result
        except AlreadyExistsError:
            outcome = "conflict"
            raise
        finally:
            self._record_metric(family, outcome, (time.perf_counter() - started) * 1000.0)

    def _record_metric(self, family: str, outcome: str, latency_ms: float) -> None:
        # Metrics never change the outcome of the upstream call they describe.
        try:
            with store_errors(f"metrics.{family}"):
                self.db.record_operation_metric(family, outcome, latency_ms)
        except InternalError:
            logger.warning("could not record %s metric (%s)", family, outcome, exc_info=True)

