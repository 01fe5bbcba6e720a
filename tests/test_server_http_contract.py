import asyncio
import json
import subprocess
import sys
from pathlib import Path

from conftest import REPO, engine_env
from handoff_bot.control_plane.api.app import ASGIServer, ServerApp
from handoff_bot.control_plane.github.github_connector_inmemory import InMemoryGitHubConnector


def _asgi_request(
    app: ASGIServer,
    method: str,
    path: str,
    body: bytes = b"",
    headers: list[tuple[bytes, bytes]] | None = None,
) -> tuple[int, dict, dict]:
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": b"",
        "headers": headers or [],
    }
    sent: list[dict] = []
    received = False

    async def receive() -> dict:
        nonlocal received
        if received:
            return {"type": "http.request", "body": b"", "more_body": False}
        received = True
        return {"type": "http.request", "body": body, "more_body": False}

    async def send(message: dict) -> None:
        sent.append(message)

    asyncio.run(app(scope, receive, send))

    start = next(msg for msg in sent if msg["type"] == "http.response.start")
    response_headers = {
        key.decode("latin-1"): value.decode("latin-1") for key, value in start["headers"]
    }
    payload = b"".join(msg.get("body", b"") for msg in sent if msg["type"] == "http.response.body")
    return start["status"], response_headers, json.loads(payload.decode("utf-8"))


def _app(tmp_path: Path, **env_overrides: str) -> ASGIServer:
    connector = InMemoryGitHubConnector()
    service = ServerApp(
        db_path=tmp_path / "http.sqlite",
        env=engine_env(**env_overrides),
        client_factory=lambda: connector,
    )
    return ASGIServer(service=service)


def test_documented_server_startup_command_is_available():
    result = subprocess.run(
        [sys.executable, "-m", "handoff_bot.control_plane.api.app", "--print-startup"],
        check=False,
        capture_output=True,
        text=True,
    )

    assert result.returncode == 0
    assert "uvicorn handoff_bot.control_plane.api.app:app --host 127.0.0.1 --port 8000" in (
        result.stdout
    )


def test_health_and_unknown_routes(tmp_path):
    app = _app(tmp_path)

    status, headers, payload = _asgi_request(
        app, "GET", "/health", headers=[(b"x-request-id", b"req-health")]
    )
    assert status == 200
    assert payload == {"status": "ok"}
    assert headers["x-request-id"] == "req-health"

    status, _headers, payload = _asgi_request(app, "GET", "/nope")
    assert status == 404
    assert payload == {"error": "not_found"}

    status, _headers, payload = _asgi_request(app, "POST", "/work-items", body=b"[1, 2]")
    assert status == 400
    assert payload == {"error": "invalid_json"}


def test_create_handoff_implement_and_runs_over_http(tmp_path):
    app = _app(tmp_path)

    status, _headers, created = _asgi_request(
        app, "POST", "/work-items", body=json.dumps({"title": "HTTP item"}).encode("utf-8")
    )
    assert status == 201
    short_id = created["short_id"]

    status, headers, handoff = _asgi_request(
        app,
        "POST",
        f"/work-items/{short_id}/handoff",
        body=b"{}",
        headers=[(b"x-actor", b"octo")],
    )
    assert status == 200
    assert headers["x-handoff-handler"] == "handoff"
    assert handoff["external_issue_number"] == 123
    assert handoff["lifecycle_status"] == "SPEC_READY"

    status, _headers, implemented = _asgi_request(
        app, "POST", f"/work-items/{short_id}/implement", body=b"{}"
    )
    assert status == 200
    assert implemented["pr"]["number"] == 101
    assert implemented["branch"] == f"afu9/issue-123-{short_id}"

    status, _headers, runs = _asgi_request(app, "GET", f"/work-items/{short_id}/runs")
    assert status == 200
    assert runs["summary"]["count"] == 2
    assert [run["type"] for run in runs["items"]] == ["implement", "handoff"]
    assert runs["items"][1]["actor"] == "octo"


def test_blocked_decision_is_rendered_with_headers(tmp_path):
    app = _app(tmp_path, HANDOFF_BOT_GITHUB_REPO="")
    _status, _headers, created = _asgi_request(
        app, "POST", "/work-items", body=json.dumps({"title": "No repo"}).encode("utf-8")
    )

    status, headers, payload = _asgi_request(
        app,
        "POST",
        f"/work-items/{created['id']}/handoff",
        headers=[(b"x-request-id", b"req-blocked")],
    )

    assert status == 500
    assert payload["error"] == "CONFIG_MISSING"
    assert payload["blocked_by"] == "CONFIG"
    assert payload["missing_config"] == ["HANDOFF_BOT_GITHUB_REPO"]
    assert payload["request_id"] == "req-blocked"
    assert headers["x-handoff-phase"] == "preflight.guardrail"
    assert headers["x-handoff-blocked-by"] == "CONFIG"
    assert headers["x-handoff-error-code"] == "CONFIG_MISSING"
    assert headers["x-handoff-missing-config"] == "HANDOFF_BOT_GITHUB_REPO"


def test_not_found_and_invalid_status_payloads(tmp_path):
    app = _app(tmp_path)

    status, _headers, payload = _asgi_request(app, "GET", "/work-items/deadbeef")
    assert status == 404
    assert payload["error"] == "ISSUE_NOT_FOUND"

    _status, _headers, created = _asgi_request(
        app, "POST", "/work-items", body=json.dumps({"title": "Status"}).encode("utf-8")
    )
    status, _headers, payload = _asgi_request(
        app,
        "POST",
        f"/work-items/{created['id']}/status",
        body=json.dumps({"status": "IMPLEMENTING"}).encode("utf-8"),
    )
    assert status == 409
    assert payload["error"] == "INVALID_TRANSITION"

    status, _headers, payload = _asgi_request(
        app, "POST", "/work-items", body=json.dumps({"title": " "}).encode("utf-8")
    )
    assert status == 400
    assert payload == {"error": "missing_title"}


def test_trigger_conflict_exposes_active_item(tmp_path):
    app = _app(tmp_path)
    ids = []
    for title in ("First", "Second"):
        _status, _headers, created = _asgi_request(
            app, "POST", "/work-items", body=json.dumps({"title": title}).encode("utf-8")
        )
        _asgi_request(app, "POST", f"/work-items/{created['id']}/handoff")
        ids.append(created["id"])

    status, _headers, first = _asgi_request(app, "POST", f"/work-items/{ids[0]}/implement/trigger")
    assert status == 200
    assert first["status"] == "TRIGGERED"

    status, headers, payload = _asgi_request(app, "POST", f"/work-items/{ids[1]}/implement/trigger")
    assert status == 409
    assert headers["x-handoff-error-code"] == "SINGLE_ACTIVE_CONFLICT"
    assert payload["active_work_item_id"] == ids[0]


def test_workflow_dispatch_and_poll_routes(tmp_path):
    app = _app(tmp_path)
    _status, _headers, created = _asgi_request(
        app, "POST", "/work-items", body=json.dumps({"title": "CI"}).encode("utf-8")
    )
    _asgi_request(app, "POST", f"/work-items/{created['id']}/handoff")

    status, _headers, dispatched = _asgi_request(
        app,
        "POST",
        f"/work-items/{created['id']}/workflows/dispatch",
        body=json.dumps({"workflow": "ci.yml", "inputs": {"suite": "smoke"}}).encode("utf-8"),
    )
    assert status == 200
    assert dispatched["workflow_run_id"] == 9001

    status, _headers, polled = _asgi_request(
        app, "GET", f"/work-items/{created['id']}/workflows/runs/9001"
    )
    assert status == 200
    assert polled["status"] == "queued"
    assert polled["terminal"] is False
    assert polled["work_item_id"] == created["id"]

    status, _headers, payload = _asgi_request(
        app, "GET", f"/work-items/{created['id']}/workflows/runs/abc"
    )
    assert status == 400
    assert payload == {"error": "invalid_workflow_run_id"}


def test_repo_override_must_be_allowlisted(tmp_path):
    app = _app(tmp_path)
    _status, _headers, created = _asgi_request(
        app, "POST", "/work-items", body=json.dumps({"title": "Override"}).encode("utf-8")
    )

    status, _headers, payload = _asgi_request(
        app,
        "POST",
        f"/work-items/{created['id']}/handoff",
        body=json.dumps({"repo": "acme/elsewhere"}).encode("utf-8"),
    )
    assert status == 403
    assert payload["error"] == "REPO_NOT_ALLOWED"

    status, _headers, payload = _asgi_request(
        app,
        "POST",
        f"/work-items/{created['id']}/handoff",
        body=json.dumps({"repo": REPO}).encode("utf-8"),
    )
    assert status == 200
    assert payload["handoff_state"] == "SYNCED"
