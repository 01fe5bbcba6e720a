"""In-memory GitHub connector for deterministic tests and local runs."""

from __future__ import annotations

import hashlib
from typing import Any

from handoff_bot.control_plane.github.github_connector import (
    AlreadyExistsError,
    AuthInvalidError,
    AuthMissingError,
    GitHubAPIError,
)


class InMemoryGitHubConnector:
    """In-memory connector used for deterministic orchestration tests.

    Failure injection: ``queue_failure`` raises a prepared exception on the next
    call(s) of a method, and ``hide_pull_requests`` / ``hide_issue_search`` make
    listing calls miss existing resources, which models search lag while another
    actor creates the same resource.
    """

    def __init__(
        self,
        next_issue_number: int = 123,
        next_pr_number: int = 101,
        next_workflow_run_id: int = 9001,
        default_branches: tuple[str, ...] = ("main",),
        auth_failure: str | None = None,
    ) -> None:
        self.next_issue_number = next_issue_number
        self.next_pr_number = next_pr_number
        self.next_workflow_run_id = next_workflow_run_id
        self.default_branches = set(default_branches)
        self.auth_failure = auth_failure
        self.calls: list[tuple[str, str]] = []
        self.issues: dict[tuple[str, int], dict[str, Any]] = {}
        self.comments: dict[tuple[str, int], list[str]] = {}
        self.refs: dict[tuple[str, str], str] = {}
        self.pull_requests: list[dict[str, Any]] = []
        self.workflow_runs: dict[int, dict[str, Any]] = {}
        self.dispatches: list[dict[str, Any]] = []
        self.hide_pull_requests = 0
        self.hide_issue_search = 0
        self._failures: dict[str, list[Exception]] = {}
        self._clock = 0

    @property
    def mutation_calls(self) -> list[tuple[str, str]]:
        return [call for call in self.calls if call[0] in _MUTATING_METHODS]

    def queue_failure(self, method: str, error: Exception, times: int = 1) -> None:
        self._failures.setdefault(method, []).extend([error] * times)

    def seed_pull_request(
        self, repo: str, branch: str, base: str, state: str = "open"
    ) -> dict[str, Any]:
        return self._store_pull_request(repo, branch, base, "seeded", state=state)

    def set_workflow_run(
        self,
        run_id: int,
        status: str,
        conclusion: str | None = None,
        jobs: list[dict[str, Any]] | None = None,
        artifacts: list[dict[str, Any]] | None = None,
    ) -> None:
        run = self.workflow_runs[run_id]
        run["status"] = status
        run["conclusion"] = conclusion
        if jobs is not None:
            run["jobs"] = jobs
        if artifacts is not None:
            run["artifacts"] = artifacts

    def verify_access(self, repo: str) -> None:
        self._enter("verify_access", repo)
        if self.auth_failure == "missing":
            raise AuthMissingError("no GitHub write token configured")
        if self.auth_failure == "invalid":
            raise AuthInvalidError(401, "Bad credentials")

    def get_ref(self, repo: str, ref: str) -> dict[str, Any]:
        self._enter("get_ref", repo)
        sha = self.refs.get((repo, ref))
        if sha is None and ref in self.default_branches:
            sha = hashlib.sha1(f"{repo}@{ref}".encode("utf-8")).hexdigest()
            self.refs[(repo, ref)] = sha
        if sha is None:
            raise GitHubAPIError(404, "Not Found")
        return {"ref": f"refs/heads/{ref}", "sha": sha}

    def create_ref(self, repo: str, ref: str, sha: str) -> dict[str, Any]:
        self._enter("create_ref", repo)
        if (repo, ref) in self.refs:
            raise AlreadyExistsError(422, "Reference already exists")
        self.refs[(repo, ref)] = sha
        return {"ref": f"refs/heads/{ref}", "sha": sha}

    def list_pull_requests(
        self, repo: str, head: str, base: str, state: str = "open"
    ) -> list[dict[str, Any]]:
        self._enter("list_pull_requests", repo)
        if self.hide_pull_requests > 0:
            self.hide_pull_requests -= 1
            return []
        owner = repo.split("/", 1)[0]
        return [
            dict(pr)
            for pr in self.pull_requests
            if pr["repo"] == repo
            and f"{owner}:{pr['head']}" == head
            and pr["base"] == base
            and (state == "all" or pr["state"] == state)
        ]

    def create_pull_request(
        self, repo: str, head: str, base: str, title: str, body: str
    ) -> dict[str, Any]:
        self._enter("create_pull_request", repo)
        branch = head.split(":", 1)[-1]
        for pr in self.pull_requests:
            if pr["repo"] == repo and pr["head"] == branch and pr["state"] == "open":
                raise AlreadyExistsError(
                    422, f"A pull request already exists for {head}."
                )
        pr = self._store_pull_request(repo, branch, base, title, body=body)
        return dict(pr)

    def create_issue(
        self, repo: str, title: str, body: str, labels: list[str]
    ) -> dict[str, Any]:
        self._enter("create_issue", repo)
        number = self.next_issue_number
        self.next_issue_number += 1
        issue = {
            "number": number,
            "url": f"https://github.com/{repo}/issues/{number}",
            "title": title,
            "body": body,
            "state": "open",
            "labels": list(labels),
        }
        self.issues[(repo, number)] = issue
        return dict(issue)

    def update_issue(
        self, repo: str, number: int, title: str, body: str, labels: list[str]
    ) -> dict[str, Any]:
        self._enter("update_issue", repo)
        issue = self.issues.get((repo, number))
        if issue is None:
            raise GitHubAPIError(404, "Not Found")
        issue.update({"title": title, "body": body, "labels": list(labels)})
        return dict(issue)

    def search_issues(self, repo: str, marker: str) -> list[dict[str, Any]]:
        self._enter("search_issues", repo)
        if self.hide_issue_search > 0:
            self.hide_issue_search -= 1
            return []
        return [
            dict(issue)
            for (issue_repo, _number), issue in sorted(self.issues.items())
            if issue_repo == repo and marker in issue["body"]
        ]

    def add_labels(self, repo: str, number: int, labels: list[str]) -> list[dict[str, Any]]:
        self._enter("add_labels", repo)
        issue = self.issues.setdefault(
            (repo, number),
            {"number": number, "url": "", "title": "", "body": "", "state": "open", "labels": []},
        )
        for label in labels:
            if label not in issue["labels"]:
                issue["labels"].append(label)
        return [{"name": label} for label in issue["labels"]]

    def create_comment(self, repo: str, number: int, body: str) -> dict[str, Any]:
        self._enter("create_comment", repo)
        comments = self.comments.setdefault((repo, number), [])
        comments.append(body)
        return {"id": len(comments), "url": f"https://github.com/{repo}/issues/{number}"}

    def dispatch_workflow(
        self, repo: str, workflow: str, ref: str, inputs: dict[str, Any]
    ) -> None:
        self._enter("dispatch_workflow", repo)
        run_id = self.next_workflow_run_id
        self.next_workflow_run_id += 1
        self.dispatches.append({"repo": repo, "workflow": workflow, "ref": ref, "inputs": inputs})
        self.workflow_runs[run_id] = {
            "id": run_id,
            "repo": repo,
            "workflow": workflow,
            "branch": ref,
            "status": "queued",
            "conclusion": None,
            "url": f"https://github.com/{repo}/actions/runs/{run_id}",
            "created_at": self._tick(),
            "jobs": [],
            "artifacts": [],
        }

    def list_workflow_runs(
        self, repo: str, workflow: str, branch: str, event: str = "workflow_dispatch"
    ) -> list[dict[str, Any]]:
        self._enter("list_workflow_runs", repo)
        runs = [
            _public_run(run)
            for run in self.workflow_runs.values()
            if run["repo"] == repo and run["workflow"] == workflow and run["branch"] == branch
        ]
        return sorted(runs, key=lambda run: run["created_at"], reverse=True)

    def get_workflow_run(self, repo: str, run_id: int) -> dict[str, Any]:
        self._enter("get_workflow_run", repo)
        run = self.workflow_runs.get(run_id)
        if run is None or run["repo"] != repo:
            raise GitHubAPIError(404, "Not Found")
        return _public_run(run)

    def list_run_jobs(self, repo: str, run_id: int) -> list[dict[str, Any]]:
        self._enter("list_run_jobs", repo)
        return [dict(job) for job in self.workflow_runs.get(run_id, {}).get("jobs", [])]

    def list_run_artifacts(self, repo: str, run_id: int) -> list[dict[str, Any]]:
        self._enter("list_run_artifacts", repo)
        return [dict(item) for item in self.workflow_runs.get(run_id, {}).get("artifacts", [])]

    def _enter(self, method: str, repo: str) -> None:
        self.calls.append((method, repo))
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def _store_pull_request(
        self,
        repo: str,
        branch: str,
        base: str,
        title: str,
        body: str = "",
        state: str = "open",
    ) -> dict[str, Any]:
        number = self.next_pr_number
        self.next_pr_number += 1
        pr = {
            "repo": repo,
            "number": number,
            "url": f"https://github.com/{repo}/pull/{number}",
            "state": state,
            "head": branch,
            "base": base,
            "title": title,
            "body": body,
            "created_at": self._tick(),
        }
        self.pull_requests.append(pr)
        return pr

    def _tick(self) -> str:
        self._clock += 1
        return f"2024-01-01T00:00:00.{self._clock:06d}Z"


_MUTATING_METHODS = {
    "create_ref",
    "create_pull_request",
    "create_issue",
    "update_issue",
    "add_labels",
    "create_comment",
    "dispatch_workflow",
}


def _public_run(run: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": run["id"],
        "status": run["status"],
        "conclusion": run["conclusion"],
        "url": run["url"],
        "created_at": run["created_at"],
    }
