"""Environment and policy-file configuration snapshot with missing-key reporting."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml


KEY_STAGE = "HANDOFF_BOT_STAGE"
KEY_GITHUB_REPO = "HANDOFF_BOT_GITHUB_REPO"
KEY_ALLOWED_REPOS = "HANDOFF_BOT_ALLOWED_REPOS"
KEY_POLICY_FILE = "HANDOFF_BOT_POLICY_FILE"
KEY_IMPLEMENT_LABEL = "HANDOFF_BOT_IMPLEMENT_LABEL"
KEY_IMPLEMENT_COMMENT = "HANDOFF_BOT_IMPLEMENT_COMMENT"
KEY_TOKEN_SCOPES = "HANDOFF_BOT_GITHUB_TOKEN_SCOPES"
KEY_BASE_BRANCH = "HANDOFF_BOT_BASE_BRANCH"
KEY_BRANCH_PREFIX = "HANDOFF_BOT_BRANCH_PREFIX"
KEY_GITHUB_TIMEOUT = "HANDOFF_BOT_GITHUB_TIMEOUT_S"
KEY_WRITE_TOKEN = "HANDOFF_BOT_GITHUB_WRITE_TOKEN"

STAGE_FALLBACK_KEYS = (KEY_STAGE, "DEPLOY_ENV", "ENVIRONMENT")

CAPABILITY_ISSUES_WRITE = "issues:write"
CAPABILITY_CONTENTS_WRITE = "contents:write"
CAPABILITY_PULL_REQUESTS_WRITE = "pull_requests:write"
CAPABILITY_ACTIONS_WRITE = "actions:write"
ALL_CAPABILITIES = frozenset(
    {
        CAPABILITY_ISSUES_WRITE,
        CAPABILITY_CONTENTS_WRITE,
        CAPABILITY_PULL_REQUESTS_WRITE,
        CAPABILITY_ACTIONS_WRITE,
    }
)

DEFAULT_DENIED_OPERATIONS = frozenset({"delete_issue", "edit_workflow"})
DEFAULT_BASE_BRANCH = "main"
DEFAULT_BRANCH_PREFIX = "afu9"
DEFAULT_GITHUB_TIMEOUT_S = 15.0


class PolicyFileError(ValueError):
    pass


@dataclass(frozen=True)
class EngineConfig:
    """Immutable configuration snapshot consulted by guardrails and preflight.

    ``values`` holds the effective value of every recognised key, whether it came
    from the environment or from the YAML policy file, so that missing-key
    reporting is a pure lookup.
    """

    values: Mapping[str, str] = field(default_factory=dict)
    allowed_repos: Mapping[str, frozenset[str]] = field(default_factory=dict)
    denied_operations: frozenset[str] = DEFAULT_DENIED_OPERATIONS
    token_scopes: frozenset[str] | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "EngineConfig":
        env_map = os.environ if env is None else env
        values: dict[str, str] = {}
        for key, value in env_map.items():
            if key.startswith("HANDOFF_BOT_") and _clean(value):
                values[key] = str(value).strip()

        for key in STAGE_FALLBACK_KEYS:
            stage = _clean(env_map.get(key))
            if stage:
                values[KEY_STAGE] = stage
                break

        policy: dict[str, Any] = {}
        policy_path = _clean(env_map.get(KEY_POLICY_FILE))
        if policy_path:
            policy = load_policy_file(Path(policy_path))

        implement = policy.get("implement") if isinstance(policy.get("implement"), dict) else {}
        for key, policy_value in (
            (KEY_IMPLEMENT_LABEL, implement.get("label")),
            (KEY_IMPLEMENT_COMMENT, implement.get("comment")),
            (KEY_GITHUB_REPO, policy.get("default_repo")),
        ):
            if key not in values and _clean(policy_value):
                values[key] = str(policy_value).strip()

        allowed_repos = _allowlist_from_policy(policy.get("allowlist"))
        for repo in _split_csv(env_map.get(KEY_ALLOWED_REPOS)):
            allowed_repos[repo.lower()] = ALL_CAPABILITIES

        denied = policy.get("denied_operations")
        denied_operations = (
            frozenset(str(op).strip() for op in denied if str(op).strip())
            if isinstance(denied, list)
            else DEFAULT_DENIED_OPERATIONS
        )

        scopes_raw = env_map.get(KEY_TOKEN_SCOPES)
        if not _clean(scopes_raw) and isinstance(policy.get("token_scopes"), list):
            scopes_raw = ",".join(str(scope) for scope in policy["token_scopes"])
        token_scopes = frozenset(_split_csv(scopes_raw)) if _clean(scopes_raw) else None

        return cls(
            values=values,
            allowed_repos=allowed_repos,
            denied_operations=denied_operations,
            token_scopes=token_scopes,
        )

    def get(self, key: str, default: str | None = None) -> str | None:
        value = self.values.get(key)
        return value if value else default

    def missing(self, keys: list[str] | tuple[str, ...]) -> list[str]:
        """Return exactly the named keys that have no effective value, in order."""

        return [key for key in keys if not self.values.get(key)]

    @property
    def stage(self) -> str | None:
        return self.get(KEY_STAGE)

    @property
    def default_repo(self) -> str | None:
        return self.get(KEY_GITHUB_REPO)

    @property
    def base_branch(self) -> str:
        return self.get(KEY_BASE_BRANCH, DEFAULT_BASE_BRANCH) or DEFAULT_BASE_BRANCH

    @property
    def branch_prefix(self) -> str:
        prefix = self.get(KEY_BRANCH_PREFIX, DEFAULT_BRANCH_PREFIX) or DEFAULT_BRANCH_PREFIX
        return prefix.strip("/")

    @property
    def github_timeout_s(self) -> float:
        raw = self.get(KEY_GITHUB_TIMEOUT)
        try:
            parsed = float(raw) if raw else DEFAULT_GITHUB_TIMEOUT_S
        except ValueError:
            return DEFAULT_GITHUB_TIMEOUT_S
        return parsed if parsed > 0 else DEFAULT_GITHUB_TIMEOUT_S

    def capabilities_for(self, repo: str) -> frozenset[str]:
        return self.allowed_repos.get(repo.strip().lower(), frozenset())


def load_policy_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise PolicyFileError(f"policy_file_not_found:{path}")
    loaded = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(loaded, dict):
        raise PolicyFileError("policy_file_not_a_mapping")
    return loaded


def _allowlist_from_policy(raw: Any) -> dict[str, frozenset[str]]:
    allowlist: dict[str, frozenset[str]] = {}
    if not isinstance(raw, list):
        return allowlist
    for entry in raw:
        if isinstance(entry, str) and entry.strip():
            allowlist[entry.strip().lower()] = ALL_CAPABILITIES
            continue
        if not isinstance(entry, dict):
            continue
        repo = str(entry.get("repo", "")).strip().lower()
        if not repo:
            continue
        capabilities = entry.get("capabilities")
        if isinstance(capabilities, list):
            allowlist[repo] = frozenset(str(cap).strip() for cap in capabilities if str(cap).strip())
        else:
            allowlist[repo] = ALL_CAPABILITIES
    return allowlist


def _split_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [part.strip() for part in str(raw).split(",") if part.strip()]


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
