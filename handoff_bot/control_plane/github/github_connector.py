"""GitHub connector contract, connector errors, and factory helpers."""

from __future__ import annotations

import os
from typing import Any, Callable, Mapping, Protocol

from handoff_bot.control_plane.github.github_auth import GitHubAuth, load_github_auth_from_env


class GitHubAPIError(RuntimeError):
    """Non-retryable GitHub response carrying the upstream status."""

    def __init__(self, status: int, message: str, github_request_id: str = "") -> None:
        super().__init__(f"github_{status}: {message}")
        self.status = status
        self.message = message
        self.github_request_id = github_request_id


class AlreadyExistsError(GitHubAPIError):
    pass


class AuthInvalidError(GitHubAPIError):
    pass


class RetryableGitHubError(RuntimeError):
    def __init__(self, message: str, reason_code: str, retry_after_s: float | None = None) -> None:
        super().__init__(message)
        self.reason_code = reason_code
        self.retry_after_s = retry_after_s


class AuthMissingError(RuntimeError):
    pass


class ClientConstructionError(RuntimeError):
    pass


class GitHubConnector(Protocol):
    """Connector contract for all GitHub integration implementations."""

    def verify_access(self, repo: str) -> None: ...

    def get_ref(self, repo: str, ref: str) -> dict[str, Any]: ...

    def create_ref(self, repo: str, ref: str, sha: str) -> dict[str, Any]: ...

    def list_pull_requests(
        self, repo: str, head: str, base: str, state: str = "open"
    ) -> list[dict[str, Any]]: ...

    def create_pull_request(
        self, repo: str, head: str, base: str, title: str, body: str
    ) -> dict[str, Any]: ...

    def create_issue(
        self, repo: str, title: str, body: str, labels: list[str]
    ) -> dict[str, Any]: ...

    def update_issue(
        self, repo: str, number: int, title: str, body: str, labels: list[str]
    ) -> dict[str, Any]: ...

    def search_issues(self, repo: str, marker: str) -> list[dict[str, Any]]: ...

    def add_labels(self, repo: str, number: int, labels: list[str]) -> list[dict[str, Any]]: ...

    def create_comment(self, repo: str, number: int, body: str) -> dict[str, Any]: ...

    def dispatch_workflow(
        self, repo: str, workflow: str, ref: str, inputs: dict[str, Any]
    ) -> None: ...

    def list_workflow_runs(
        self, repo: str, workflow: str, branch: str, event: str = "workflow_dispatch"
    ) -> list[dict[str, Any]]: ...

    def get_workflow_run(self, repo: str, run_id: int) -> dict[str, Any]: ...

    def list_run_jobs(self, repo: str, run_id: int) -> list[dict[str, Any]]: ...

    def list_run_artifacts(self, repo: str, run_id: int) -> list[dict[str, Any]]: ...


ClientFactory = Callable[[], GitHubConnector]


def build_connector_from_env(
    env: Mapping[str, str] | None = None,
    timeout_s: float = 15.0,
) -> GitHubConnector:
    env_map = os.environ if env is None else env
    connector_type = (env_map.get("HANDOFF_BOT_GITHUB_CONNECTOR") or "in_memory").strip().lower()

    if connector_type == "api":
        from handoff_bot.control_plane.github.github_connector_api import GitHubAPIConnector

        auth = load_github_auth_from_env(env_map)
        if not auth.write_token:
            raise AuthMissingError("no GitHub write token configured")
        return GitHubAPIConnector(auth=auth, timeout_s=timeout_s)

    if connector_type == "in_memory":
        from handoff_bot.control_plane.github.github_connector_inmemory import (
            InMemoryGitHubConnector,
        )

        return InMemoryGitHubConnector()

    raise ClientConstructionError(f"unknown_connector_type:{connector_type}")


def build_client_factory(
    env: Mapping[str, str] | None = None,
    timeout_s: float = 15.0,
) -> ClientFactory:
    """Return a factory building a fresh connector per request.

    The in-memory connector is shared across calls so local runs observe their
    own writes.
    """

    env_map = dict(os.environ if env is None else env)
    connector_type = (env_map.get("HANDOFF_BOT_GITHUB_CONNECTOR") or "in_memory").strip().lower()
    if connector_type == "in_memory":
        shared = build_connector_from_env(env_map, timeout_s=timeout_s)
        return lambda: shared

    def _factory() -> GitHubConnector:
        return build_connector_from_env(env_map, timeout_s=timeout_s)

    return _factory


__all__ = [
    "AlreadyExistsError",
    "AuthInvalidError",
    "AuthMissingError",
    "ClientConstructionError",
    "ClientFactory",
    "GitHubAPIError",
    "GitHubAuth",
    "GitHubConnector",
    "RetryableGitHubError",
    "build_client_factory",
    "build_connector_from_env",
]
