"""GitHub REST API connector implementation."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import requests

from handoff_bot.control_plane.github.github_auth import GitHubAuth
from handoff_bot.control_plane.github.github_connector import (
    AlreadyExistsError,
    AuthInvalidError,
    GitHubAPIError,
    RetryableGitHubError,
)


class GitHubAPIConnector:
    def __init__(
        self,
        auth: GitHubAuth | None = None,
        base_url: str = "https://api.github.com",
        session: requests.Session | None = None,
        timeout_s: float = 15.0,
    ) -> None:
        self.auth = auth or GitHubAuth(read_token=None, write_token=None)
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout_s = timeout_s

    def verify_access(self, repo: str) -> None:
        self._request("GET", f"/repos/{repo}", token=self.auth.write_token)

    def get_ref(self, repo: str, ref: str) -> dict[str, Any]:
        response = self._request(
            "GET",
            f"/repos/{repo}/git/ref/heads/{quote(ref, safe='/')}",
            token=self.auth.read_token,
        )
        obj = response.get("object") if isinstance(response, dict) else None
        return {
            "ref": str(response.get("ref", f"refs/heads/{ref}")),
            "sha": str((obj or {}).get("sha", "")),
        }

    def create_ref(self, repo: str, ref: str, sha: str) -> dict[str, Any]:
        response = self._request(
            "POST",
            f"/repos/{repo}/git/refs",
            token=self.auth.write_token,
            json={"ref": f"refs/heads/{ref}", "sha": sha},
        )
        return {"ref": str(response.get("ref", f"refs/heads/{ref}")), "sha": sha}

    def list_pull_requests(
        self, repo: str, head: str, base: str, state: str = "open"
    ) -> list[dict[str, Any]]:
        response = self._request(
            "GET",
            f"/repos/{repo}/pulls",
            token=self.auth.read_token,
            params={"head": head, "base": base, "state": state, "per_page": "100"},
        )
        if isinstance(response, list):
            return [_normalize_pull_request(row) for row in response if isinstance(row, dict)]
        return []

    def create_pull_request(
        self, repo: str, head: str, base: str, title: str, body: str
    ) -> dict[str, Any]:
        response = self._request(
            "POST",
            f"/repos/{repo}/pulls",
            token=self.auth.write_token,
            json={"head": head, "base": base, "title": title, "body": body},
        )
        return _normalize_pull_request(response)

    def create_issue(
        self, repo: str, title: str, body: str, labels: list[str]
    ) -> dict[str, Any]:
        response = self._request(
            "POST",
            f"/repos/{repo}/issues",
            token=self.auth.write_token,
            json={"title": title, "body": body, "labels": labels},
        )
        return _normalize_issue(response)

    def update_issue(
        self, repo: str, number: int, title: str, body: str, labels: list[str]
    ) -> dict[str, Any]:
        response = self._request(
            "PATCH",
            f"/repos/{repo}/issues/{number}",
            token=self.auth.write_token,
            json={"title": title, "body": body, "labels": labels},
        )
        return _normalize_issue(response)

    def search_issues(self, repo: str, marker: str) -> list[dict[str, Any]]:
        response = self._request(
            "GET",
            "/search/issues",
            token=self.auth.read_token,
            params={"q": f'repo:{repo} is:issue in:body "{marker}"', "per_page": "10"},
        )
        rows = response.get("items", []) if isinstance(response, dict) else []
        # Search matches tokens loosely; keep only exact marker hits.
        return [
            _normalize_issue(row)
            for row in rows
            if isinstance(row, dict) and marker in str(row.get("body") or "")
        ]

    def add_labels(self, repo: str, number: int, labels: list[str]) -> list[dict[str, Any]]:
        response = self._request(
            "POST",
            f"/repos/{repo}/issues/{number}/labels",
            token=self.auth.write_token,
            json={"labels": labels},
        )
        return response if isinstance(response, list) else []

    def create_comment(self, repo: str, number: int, body: str) -> dict[str, Any]:
        response = self._request(
            "POST",
            f"/repos/{repo}/issues/{number}/comments",
            token=self.auth.write_token,
            json={"body": body},
        )
        return {"id": response.get("id"), "url": response.get("html_url")}

    def dispatch_workflow(
        self, repo: str, workflow: str, ref: str, inputs: dict[str, Any]
    ) -> None:
        self._request(
            "POST",
            f"/repos/{repo}/actions/workflows/{workflow}/dispatches",
            token=self.auth.write_token,
            json={"ref": ref, "inputs": inputs},
        )

    def list_workflow_runs(
        self, repo: str, workflow: str, branch: str, event: str = "workflow_dispatch"
    ) -> list[dict[str, Any]]:
        response = self._request(
            "GET",
            f"/repos/{repo}/actions/workflows/{workflow}/runs",
            token=self.auth.read_token,
            params={"branch": branch, "event": event, "per_page": "5"},
        )
        rows = response.get("workflow_runs", []) if isinstance(response, dict) else []
        return [_normalize_workflow_run(row) for row in rows if isinstance(row, dict)]

    def get_workflow_run(self, repo: str, run_id: int) -> dict[str, Any]:
        response = self._request(
            "GET", f"/repos/{repo}/actions/runs/{run_id}", token=self.auth.read_token
        )
        return _normalize_workflow_run(response)

    def list_run_jobs(self, repo: str, run_id: int) -> list[dict[str, Any]]:
        response = self._request(
            "GET", f"/repos/{repo}/actions/runs/{run_id}/jobs", token=self.auth.read_token
        )
        rows = response.get("jobs", []) if isinstance(response, dict) else []
        return [
            {
                "id": row.get("id"),
                "name": str(row.get("name", "")),
                "status": str(row.get("status") or "").lower(),
                "conclusion": str(row.get("conclusion") or "").lower() or None,
            }
            for row in rows
            if isinstance(row, dict)
        ]

    def list_run_artifacts(self, repo: str, run_id: int) -> list[dict[str, Any]]:
        response = self._request(
            "GET",
            f"/repos/{repo}/actions/runs/{run_id}/artifacts",
            token=self.auth.read_token,
        )
        rows = response.get("artifacts", []) if isinstance(response, dict) else []
        return [
            {
                "id": row.get("id"),
                "name": str(row.get("name", "")),
                "size_in_bytes": int(row.get("size_in_bytes") or 0),
            }
            for row in rows
            if isinstance(row, dict)
        ]

    def _request_with_headers(
        self,
        method: str,
        path: str,
        token: str | None,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> tuple[Any, dict[str, Any]]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = self.session.request(
                method=method,
                url=f"{self.base_url}{path}",
                headers=headers,
                json=json,
                params=params,
                timeout=self.timeout_s,
            )
        except requests.Timeout as exc:
            raise RetryableGitHubError(
                "GitHub API request timed out", reason_code="github_timeout"
            ) from exc
        except requests.ConnectionError as exc:
            raise RetryableGitHubError(
                "GitHub API connection failed", reason_code="github_network"
            ) from exc

        response_headers = dict(response.headers or {})
        status = response.status_code
        if status in {429, 403} and _looks_like_rate_limit(response):
            raise RetryableGitHubError(
                "GitHub API retryable failure",
                reason_code=_reason_code_for_status(status),
                retry_after_s=_parse_retry_after(response_headers.get("Retry-After")),
            )
        if status in {500, 502, 503, 504}:
            raise RetryableGitHubError(
                "GitHub API 5xx response",
                reason_code=_reason_code_for_status(status),
            )
        if status >= 400:
            message = _error_message(response)
            request_id = str(response_headers.get("X-GitHub-Request-Id", ""))
            if status in {401, 403}:
                raise AuthInvalidError(status, message, request_id)
            if status == 422 and "already exists" in message.lower():
                raise AlreadyExistsError(status, message, request_id)
            raise GitHubAPIError(status, message, request_id)

        if not response.content:
            return {}, response_headers
        return response.json(), response_headers

    def _request(
        self,
        method: str,
        path: str,
        token: str | None,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        payload, _headers = self._request_with_headers(
            method=method,
            path=path,
            token=token,
            json=json,
            params=params,
        )
        return payload


def _normalize_issue(row: Any) -> dict[str, Any]:
    if not isinstance(row, dict):
        return {}
    return {
        "number": row.get("number"),
        "url": row.get("html_url") or row.get("url"),
        "title": str(row.get("title", "")),
        "body": str(row.get("body") or ""),
        "state": str(row.get("state", "open")),
        "labels": [
            str(label.get("name", "")) if isinstance(label, dict) else str(label)
            for label in row.get("labels", [])
        ],
    }


def _normalize_pull_request(row: Any) -> dict[str, Any]:
    if not isinstance(row, dict):
        return {}
    head = row.get("head") if isinstance(row.get("head"), dict) else {}
    base = row.get("base") if isinstance(row.get("base"), dict) else {}
    return {
        "number": row.get("number"),
        "url": row.get("html_url") or row.get("url"),
        "state": str(row.get("state", "open")),
        "head": str(head.get("ref", "")),
        "base": str(base.get("ref", "")),
        "created_at": str(row.get("created_at", "")),
    }


def _normalize_workflow_run(row: Any) -> dict[str, Any]:
    if not isinstance(row, dict):
        return {}
    return {
        "id": row.get("id"),
        "status": str(row.get("status") or "").lower(),
        "conclusion": str(row.get("conclusion") or "").lower() or None,
        "url": row.get("html_url"),
        "created_at": str(row.get("created_at", "")),
    }


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return str(getattr(response, "text", "") or "")[:200]
    if not isinstance(payload, dict):
        return ""
    parts = [str(payload.get("message", ""))]
    for error in payload.get("errors", []) or []:
        if isinstance(error, dict) and error.get("message"):
            parts.append(str(error["message"]))
    return "; ".join(part for part in parts if part)


def _looks_like_rate_limit(response: requests.Response) -> bool:
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    try:
        payload = response.json()
    except ValueError:
        return False
    message = str(payload.get("message", "")).lower()
    return "rate limit" in message


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if parsed >= 0 else None


def _reason_code_for_status(status: int) -> str:
    if status in {429, 403}:
        return "github_rate_limited"
    return f"github_{status}"
