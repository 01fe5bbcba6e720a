from __future__ import annotations

from pathlib import Path

import pytest

from conftest import REPO, engine_env
from handoff_bot.control_plane.api.app import ServerApp
from handoff_bot.control_plane.github.github_connector import (
    ClientConstructionError,
    GitHubConnector,
)
from handoff_bot.control_plane.github.github_connector_inmemory import InMemoryGitHubConnector
from handoff_bot.control_plane.models.contracts import BlockedBy
from handoff_bot.control_plane.models.errors import InternalError, PreflightBlocked
from handoff_bot.control_plane.orchestration.preflight import PreflightResult


def _service(
    tmp_path: Path,
    connector: InMemoryGitHubConnector | None = None,
    **env_overrides: str,
) -> ServerApp:
    shared = connector or InMemoryGitHubConnector()
    return ServerApp(
        db_path=tmp_path / "preflight.sqlite",
        env=engine_env(**env_overrides),
        client_factory=lambda: shared,
    )


def _item(service: ServerApp) -> dict:
    return service.create_work_item({"title": "Preflight subject"})


def test_missing_stage_blocks_first(tmp_path: Path) -> None:
    service = _service(tmp_path, HANDOFF_BOT_STAGE="", HANDOFF_BOT_ALLOWED_REPOS="")

    result = service.orchestrator.check_preflight("handoff", "no-such-item")

    assert result.decision is not None
    assert result.decision.code == "ENGINE_MISCONFIGURED"
    assert result.decision.blocked_by == BlockedBy.CONFIG
    assert result.decision.missing_config == ("HANDOFF_BOT_STAGE",)
    assert result.decision.http_status == 500


def test_stage_falls_back_to_deploy_env(tmp_path: Path) -> None:
    service = _service(tmp_path, HANDOFF_BOT_STAGE="", DEPLOY_ENV="staging")
    item = _item(service)

    assert service.orchestrator.check_preflight("handoff", item["id"]).passed


def test_unknown_identifier_is_not_found(tmp_path: Path) -> None:
    service = _service(tmp_path)

    result = service.orchestrator.check_preflight("handoff", "deadbeef")

    assert result.decision.code == "ISSUE_NOT_FOUND"
    assert result.decision.http_status == 404


def test_ambiguous_short_id_requires_canonical_id(tmp_path: Path) -> None:
    service = _service(tmp_path)
    service.db.create_work_item("one", work_item_id="abcdef12-0000-4000-8000-000000000001")
    service.db.create_work_item("two", work_item_id="abcdef12-0000-4000-8000-000000000002")

    ambiguous = service.orchestrator.check_preflight("handoff", "abcdef12")
    canonical = service.orchestrator.check_preflight(
        "handoff", "abcdef12-0000-4000-8000-000000000002"
    )

    assert ambiguous.decision.code == "IDENTIFIER_AMBIGUOUS"
    assert ambiguous.decision.http_status == 409
    assert canonical.passed
    assert canonical.item.title == "two"


def test_mirror_is_checked_before_lifecycle_state_and_config(tmp_path: Path) -> None:
    service = _service(tmp_path, HANDOFF_BOT_ALLOWED_REPOS="")
    item = _item(service)

    result = service.orchestrator.check_preflight("implement", item["id"])

    assert result.decision.code == "MIRROR_MISSING"
    assert result.decision.blocked_by == BlockedBy.STATE


def test_illegal_lifecycle_state_is_not_ready(tmp_path: Path) -> None:
    service = _service(tmp_path)
    item = _item(service)
    service.handoff(item["id"])
    service.implement(item["id"])
    service.set_status(item["id"], "VERIFIED")

    result = service.orchestrator.check_preflight("implement", item["id"])

    assert result.decision.code == "STATE_NOT_READY"
    assert result.decision.phase == "preflight.state"


def test_missing_target_repo_reports_config_key(tmp_path: Path) -> None:
    service = _service(tmp_path, HANDOFF_BOT_GITHUB_REPO="")
    item = _item(service)

    result = service.orchestrator.check_preflight("handoff", item["id"])

    assert result.decision.code == "CONFIG_MISSING"
    assert result.decision.missing_config == ("HANDOFF_BOT_GITHUB_REPO",)


def test_repo_outside_allowlist_is_policy_blocked(tmp_path: Path) -> None:
    service = _service(tmp_path, HANDOFF_BOT_ALLOWED_REPOS="acme/other")
    item = _item(service)

    with pytest.raises(PreflightBlocked) as exc_info:
        service.handoff(item["id"])

    decision = exc_info.value.decision
    assert decision.code == "REPO_NOT_ALLOWED"
    assert decision.blocked_by == BlockedBy.POLICY
    assert decision.http_status == 403
    assert service.list_runs(item["id"]) == []
    events = service.db.list_audit_events("preflight_blocked")
    assert events[-1]["payload"]["operation"] == "handoff"


def test_trigger_config_missing_entirely_blocks(tmp_path: Path) -> None:
    service = _service(
        tmp_path, HANDOFF_BOT_IMPLEMENT_LABEL="", HANDOFF_BOT_IMPLEMENT_COMMENT=""
    )
    item = _item(service)
    service.handoff(item["id"])

    result = service.orchestrator.check_preflight("implement_trigger", item["id"])

    assert result.decision.code == "TRIGGER_CONFIG_MISSING"
    assert result.decision.missing_config == (
        "HANDOFF_BOT_IMPLEMENT_LABEL",
        "HANDOFF_BOT_IMPLEMENT_COMMENT",
    )
    assert result.decision.http_status == 409


def test_partial_trigger_config_falls_back_to_defaults(tmp_path: Path) -> None:
    connector = InMemoryGitHubConnector()
    service = _service(tmp_path, connector, HANDOFF_BOT_IMPLEMENT_COMMENT="")
    item = _item(service)
    service.handoff(item["id"])

    result = service.orchestrator.check_preflight("implement_trigger", item["id"])

    assert result.passed
    assert result.operation_config["defaulted_keys"] == ["HANDOFF_BOT_IMPLEMENT_COMMENT"]
    triggered = service.trigger_implementation(item["id"])
    assert triggered["comment_posted"] is True
    assert connector.comments[(REPO, 123)][0].startswith("Implementation requested for #123")


def test_missing_credential_is_auth_missing(tmp_path: Path) -> None:
    service = _service(tmp_path, InMemoryGitHubConnector(auth_failure="missing"))
    item = _item(service)

    with pytest.raises(PreflightBlocked) as exc_info:
        service.handoff(item["id"])

    assert exc_info.value.code == "AUTH_MISSING"
    assert exc_info.value.decision.http_status == 409
    assert service.get_work_item(item["id"])["handoff_state"] == "NOT_SENT"


def test_rejected_credential_is_auth_invalid(tmp_path: Path) -> None:
    service = _service(tmp_path, InMemoryGitHubConnector(auth_failure="invalid"))
    item = _item(service)

    result = service.orchestrator.check_preflight("handoff", item["id"])

    assert result.decision.code == "AUTH_INVALID"
    assert result.decision.blocked_by == BlockedBy.UPSTREAM
    assert result.decision.upstream_status == 401


def test_client_construction_failure_without_config_cause_is_unavailable(
    tmp_path: Path,
) -> None:
    def factory() -> GitHubConnector:
        raise ClientConstructionError("connector could not be built")

    service = ServerApp(
        db_path=tmp_path / "preflight.sqlite", env=engine_env(), client_factory=factory
    )
    item = _item(service)

    with pytest.raises(PreflightBlocked) as exc_info:
        service.handoff(item["id"])

    assert exc_info.value.code == "CLIENT_UNAVAILABLE"
    assert exc_info.value.decision.blocked_by == BlockedBy.CONFIG


def test_client_construction_failure_reports_config_root_cause(tmp_path: Path) -> None:
    holder: dict[str, ServerApp] = {}

    def factory() -> GitHubConnector:
        holder["service"].env.pop("HANDOFF_BOT_STAGE", None)
        raise ClientConstructionError("connector could not be built")

    service = ServerApp(
        db_path=tmp_path / "preflight.sqlite", env=engine_env(), client_factory=factory
    )
    holder["service"] = service
    item = _item(service)

    result = service.orchestrator.check_preflight("handoff", item["id"])

    assert result.decision.code == "ENGINE_MISCONFIGURED"
    assert result.decision.missing_config == ("HANDOFF_BOT_STAGE",)


def test_unknown_operation_is_rejected(tmp_path: Path) -> None:
    service = _service(tmp_path)
    with pytest.raises(ValueError, match="unknown_operation"):
        service.orchestrator.check_preflight("delete_everything", "x")


def test_blocked_result_has_no_item_to_act_on(tmp_path: Path) -> None:
    service = _service(tmp_path)

    result = service.orchestrator.check_preflight("handoff", "no-such-item")

    assert result.passed is False
    with pytest.raises(InternalError) as exc_info:
        result.require_item()
    assert exc_info.value.code == "PREFLIGHT_INCOMPLETE"
    with pytest.raises(InternalError):
        PreflightResult(decision=None).require_config()
