from __future__ import annotations

from pathlib import Path

import pytest

from handoff_bot.control_plane.config.config_resolver import (
    ALL_CAPABILITIES,
    DEFAULT_DENIED_OPERATIONS,
    EngineConfig,
    PolicyFileError,
)


def test_missing_reports_exactly_the_absent_keys_in_order() -> None:
    config = EngineConfig.from_env(
        {"HANDOFF_BOT_STAGE": "prod", "HANDOFF_BOT_GITHUB_REPO": "   "}
    )

    assert config.missing(["HANDOFF_BOT_GITHUB_REPO", "HANDOFF_BOT_STAGE", "HANDOFF_BOT_X"]) == [
        "HANDOFF_BOT_GITHUB_REPO",
        "HANDOFF_BOT_X",
    ]


def test_explicit_env_ignores_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HANDOFF_BOT_STAGE", "from-process")
    assert EngineConfig.from_env({}).stage is None


def test_allowed_repos_env_grants_all_capabilities() -> None:
    config = EngineConfig.from_env({"HANDOFF_BOT_ALLOWED_REPOS": "Acme/Widgets, acme/tools"})

    assert config.capabilities_for("acme/widgets") == ALL_CAPABILITIES
    assert config.capabilities_for("ACME/TOOLS") == ALL_CAPABILITIES
    assert config.capabilities_for("acme/other") == frozenset()
    assert config.denied_operations == DEFAULT_DENIED_OPERATIONS
    assert config.token_scopes is None


def test_policy_file_supplies_allowlist_trigger_and_scopes(tmp_path: Path) -> None:
    policy = tmp_path / "policy.yaml"
    policy.write_text(
        "\n".join(
            [
                "default_repo: acme/widgets",
                "allowlist:",
                "  - repo: acme/widgets",
                "    capabilities: ['issues:write']",
                "  - acme/tools",
                "denied_operations: [dispatch_workflow]",
                "token_scopes: ['issues:write', 'contents:write']",
                "implement:",
                "  label: build-me",
            ]
        ),
        encoding="utf-8",
    )

    config = EngineConfig.from_env(
        {"HANDOFF_BOT_POLICY_FILE": str(policy), "HANDOFF_BOT_STAGE": "dev"}
    )

    assert config.default_repo == "acme/widgets"
    assert config.capabilities_for("acme/widgets") == frozenset({"issues:write"})
    assert config.capabilities_for("acme/tools") == ALL_CAPABILITIES
    assert config.denied_operations == frozenset({"dispatch_workflow"})
    assert config.token_scopes == frozenset({"issues:write", "contents:write"})
    assert config.get("HANDOFF_BOT_IMPLEMENT_LABEL") == "build-me"
    assert config.missing(["HANDOFF_BOT_IMPLEMENT_COMMENT"]) == ["HANDOFF_BOT_IMPLEMENT_COMMENT"]


def test_env_overrides_policy_file_values(tmp_path: Path) -> None:
    policy = tmp_path / "policy.yaml"
    policy.write_text("implement:\n  label: from-file\n", encoding="utf-8")

    config = EngineConfig.from_env(
        {"HANDOFF_BOT_POLICY_FILE": str(policy), "HANDOFF_BOT_IMPLEMENT_LABEL": "from-env"}
    )

    assert config.get("HANDOFF_BOT_IMPLEMENT_LABEL") == "from-env"


def test_missing_or_malformed_policy_file_raises(tmp_path: Path) -> None:
    with pytest.raises(PolicyFileError, match="policy_file_not_found"):
        EngineConfig.from_env({"HANDOFF_BOT_POLICY_FILE": str(tmp_path / "absent.yaml")})

    listed = tmp_path / "list.yaml"
    listed.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(PolicyFileError, match="policy_file_not_a_mapping"):
        EngineConfig.from_env({"HANDOFF_BOT_POLICY_FILE": str(listed)})


def test_branch_defaults_and_timeout_parsing() -> None:
    defaults = EngineConfig.from_env({})
    tuned = EngineConfig.from_env(
        {
            "HANDOFF_BOT_BASE_BRANCH": "develop",
            "HANDOFF_BOT_BRANCH_PREFIX": "bots/",
            "HANDOFF_BOT_GITHUB_TIMEOUT_S": "not-a-number",
        }
    )

    assert defaults.base_branch == "main"
    assert defaults.branch_prefix == "afu9"
    assert tuned.base_branch == "develop"
    assert tuned.branch_prefix == "bots"
    assert tuned.github_timeout_s == 15.0
