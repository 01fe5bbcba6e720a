"""Work-item handoff application surface with a minimal ASGI HTTP layer."""

from __future__ import annotations

import argparse
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import parse_qs, unquote

from handoff_bot.control_plane.config.config_resolver import EngineConfig, PolicyFileError
from handoff_bot.control_plane.db.db import OrchestratorDB
from handoff_bot.control_plane.github.github_connector import ClientFactory, build_client_factory
from handoff_bot.control_plane.models.errors import OrchestrationError
from handoff_bot.control_plane.orchestration.orchestrator import Orchestrator
from handoff_bot.shared.logging_setup import configure_logging
from handoff_bot.shared.redaction import safe_details
from handoff_bot.shared.settings import get_storage_settings

logger = logging.getLogger(__name__)


class ServerApp:
    """Thin callable facade mirroring the HTTP endpoints."""

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        env: Mapping[str, str] | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.env = dict(os.environ if env is None else env)
        self.db = OrchestratorDB(db_path)
        self.client_factory = client_factory or build_client_factory(
            self.env, timeout_s=EngineConfig.from_env(self.env).github_timeout_s
        )
        self.orchestrator = Orchestrator(
            db=self.db,
            config_provider=self.config_snapshot,
            client_factory=self.client_factory,
        )

    def config_snapshot(self) -> EngineConfig:
        return EngineConfig.from_env(self.env)

    def create_work_item(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self.orchestrator.create_work_item(payload).model_dump(mode="json")

    def get_work_item(self, identifier: str, request_id: str = "") -> dict[str, Any]:
        return self.orchestrator.get_work_item(identifier, request_id).model_dump(mode="json")

    def set_status(
        self, identifier: str, status: str, request_id: str = "", actor: str = ""
    ) -> dict[str, Any]:
        item = self.orchestrator.transition_lifecycle(identifier, status, request_id, actor)
        return item.model_dump(mode="json")

    def handoff(
        self,
        identifier: str,
        request_id: str = "",
        actor: str = "",
        mode: str = "create",
        repo: str | None = None,
    ) -> dict[str, Any]:
        return self.orchestrator.handoff(
            identifier, request_id=request_id, actor=actor, mode=mode, repo=repo
        )

    def trigger_implementation(
        self, identifier: str, request_id: str = "", actor: str = "", disambiguator: str = ""
    ) -> dict[str, Any]:
        return self.orchestrator.trigger_implementation(
            identifier, request_id=request_id, actor=actor, disambiguator=disambiguator
        )

    def implement(
        self,
        identifier: str,
        request_id: str = "",
        actor: str = "",
        base_branch: str | None = None,
        pr_title: str | None = None,
        pr_body: str | None = None,
    ) -> dict[str, Any]:
        return self.orchestrator.implement(
            identifier,
            request_id=request_id,
            actor=actor,
            base_branch=base_branch,
            pr_title=pr_title,
            pr_body=pr_body,
        )

    def dispatch_workflow(
        self,
        identifier: str,
        workflow: str,
        ref: str | None = None,
        inputs: dict[str, Any] | None = None,
        request_id: str = "",
        actor: str = "",
    ) -> dict[str, Any]:
        return self.orchestrator.dispatch_workflow(
            identifier, workflow, ref=ref, inputs=inputs, request_id=request_id, actor=actor
        )

    def poll_workflow_run(
        self, identifier: str, workflow_run_id: int, request_id: str = "", actor: str = ""
    ) -> dict[str, Any]:
        return self.orchestrator.poll_workflow_run(
            identifier, workflow_run_id, request_id=request_id, actor=actor
        )

    def list_runs(self, identifier: str, request_id: str = "") -> list[dict[str, Any]]:
        return self.orchestrator.list_runs(identifier, request_id)


class ASGIServer:
    """Minimal ASGI adapter rendering orchestration results and decisions."""

    def __init__(self, service: ServerApp | None = None) -> None:
        self._service = service

    @property
    def service(self) -> ServerApp:
        if self._service is None:
            settings = get_storage_settings()
            configure_logging(settings.log_level)
            self._service = create_app(db_path=settings.sqlite_path)
        return self._service

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope.get("type") != "http":
            await self._send_json(send, 500, {"error": "unsupported_scope"})
            return

        method = scope.get("method", "GET")
        path = scope.get("path", "")
        query_params = self._parse_query_params(scope.get("query_string", b""))
        request_headers = self._parse_headers(scope.get("headers", []))
        request_id = request_headers.get("x-request-id", "").strip() or uuid.uuid4().hex
        actor = request_headers.get("x-actor", "").strip()
        body = await self._read_body(receive)
        headers = {"x-request-id": request_id}

        if method == "GET" and path == "/health":
            await self._send_json(send, 200, {"status": "ok"}, headers)
            return

        payload = self._parse_json(body)
        if payload is None:
            await self._send_json(send, 400, {"error": "invalid_json"}, headers)
            return

        route = self._match_route(method, path)
        if route is None:
            await self._send_json(send, 404, {"error": "not_found"}, headers)
            return
        handler, identifier, extra = route
        headers["x-handoff-handler"] = handler

        try:
            status, result = self._dispatch(
                handler, identifier, extra, payload, query_params, request_id, actor
            )
            await self._send_json(send, status, result, headers)
        except OrchestrationError as exc:
            decision = exc.decision
            headers.update(
                {
                    "x-handoff-phase": decision.phase,
                    "x-handoff-blocked-by": decision.blocked_by.value,
                    "x-handoff-error-code": decision.code,
                }
            )
            if decision.missing_config:
                headers["x-handoff-missing-config"] = ",".join(decision.missing_config)
            body_payload = {"error": decision.code, **exc.as_dict()}
            body_payload["request_id"] = decision.request_id or request_id
            await self._send_json(send, decision.http_status, body_payload, headers)
        except PolicyFileError as exc:
            headers["x-handoff-blocked-by"] = "CONFIG"
            headers["x-handoff-error-code"] = "POLICY_FILE_INVALID"
            await self._send_json(
                send,
                500,
                {"error": "POLICY_FILE_INVALID", "details_safe": safe_details(str(exc))},
                headers,
            )
        except ValueError as exc:
            await self._send_json(send, 400, {"error": safe_details(str(exc))}, headers)
        except Exception as exc:  # pragma: no cover - defensive response mapping
            logger.exception("unhandled error in %s", handler)
            headers["x-handoff-error-code"] = "INTERNAL_ERROR"
            await self._send_json(
                send,
                500,
                {"error": "INTERNAL_ERROR", "details_safe": safe_details(str(exc))},
                headers,
            )

    def _dispatch(
        self,
        handler: str,
        identifier: str,
        extra: str,
        payload: dict[str, Any],
        query_params: dict[str, str],
        request_id: str,
        actor: str,
    ) -> tuple[int, Any]:
        actor = str(payload.get("actor", "") or actor)
        if handler == "create_work_item":
            return 201, self.service.create_work_item(payload)
        if handler == "get_work_item":
            return 200, self.service.get_work_item(identifier, request_id)
        if handler == "set_status":
            status = str(payload.get("status", "")).strip()
            if not status:
                raise ValueError("missing_status")
            return 200, self.service.set_status(identifier, status, request_id, actor)
        if handler == "handoff":
            mode = str(payload.get("mode", "") or query_params.get("mode", "") or "create")
            return 200, self.service.handoff(
                identifier,
                request_id=request_id,
                actor=actor,
                mode=mode,
                repo=str(payload.get("repo", "")).strip() or None,
            )
        if handler == "trigger":
            return 200, self.service.trigger_implementation(
                identifier,
                request_id=request_id,
                actor=actor,
                disambiguator=str(payload.get("disambiguator", "")),
            )
        if handler == "implement":
            return 200, self.service.implement(
                identifier,
                request_id=request_id,
                actor=actor,
                base_branch=payload.get("base_branch"),
                pr_title=payload.get("pr_title"),
                pr_body=payload.get("pr_body"),
            )
        if handler == "dispatch_workflow":
            inputs = payload.get("inputs") or {}
            if not isinstance(inputs, dict):
                raise ValueError("invalid_inputs")
            return 200, self.service.dispatch_workflow(
                identifier,
                str(payload.get("workflow", "")),
                ref=payload.get("ref"),
                inputs=inputs,
                request_id=request_id,
                actor=actor,
            )
        if handler == "poll_workflow_run":
            try:
                workflow_run_id = int(extra)
            except ValueError as exc:
                raise ValueError("invalid_workflow_run_id") from exc
            return 200, self.service.poll_workflow_run(
                identifier, workflow_run_id, request_id=request_id, actor=actor
            )
        if handler == "list_runs":
            runs = self.service.list_runs(identifier, request_id)
            return 200, {"items": runs, "summary": {"count": len(runs)}}
        raise ValueError(f"unknown_handler:{handler}")

    def _match_route(self, method: str, path: str) -> tuple[str, str, str] | None:
        parts = [unquote(part) for part in path.split("/") if part]
        if not parts or parts[0] != "work-items":
            return None
        if len(parts) == 1:
            return ("create_work_item", "", "") if method == "POST" else None
        identifier = parts[1]
        tail = parts[2:]
        routes = {
            ("GET", ()): "get_work_item",
            ("POST", ("status",)): "set_status",
            ("POST", ("handoff",)): "handoff",
            ("POST", ("implement", "trigger")): "trigger",
            ("POST", ("implement",)): "implement",
            ("POST", ("workflows", "dispatch")): "dispatch_workflow",
            ("GET", ("runs",)): "list_runs",
        }
        handler = routes.get((method, tuple(tail)))
        if handler is not None:
            return handler, identifier, ""
        if method == "GET" and len(tail) == 3 and tail[:2] == ["workflows", "runs"]:
            return "poll_workflow_run", identifier, tail[2]
        return None

    async def _read_body(self, receive: Any) -> bytes:
        chunks: list[bytes] = []
        while True:
            message = await receive()
            if message["type"] != "http.request":
                continue
            chunks.append(message.get("body", b""))
            if not message.get("more_body", False):
                break
        return b"".join(chunks)

    def _parse_query_params(self, raw_query: bytes) -> dict[str, str]:
        if not raw_query:
            return {}
        parsed = parse_qs(raw_query.decode("utf-8"), keep_blank_values=False)
        return {key: values[-1] for key, values in parsed.items() if values}

    def _parse_headers(self, raw_headers: list[tuple[bytes, bytes]]) -> dict[str, str]:
        return {
            key.decode("latin-1").lower(): value.decode("latin-1") for key, value in raw_headers
        }

    def _parse_json(self, body: bytes) -> dict[str, Any] | None:
        if not body:
            return {}
        try:
            parsed = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        if not isinstance(parsed, dict):
            return None
        return parsed

    async def _send_json(
        self,
        send: Any,
        status: int,
        payload: Any,
        headers: dict[str, str] | None = None,
    ) -> None:
        body = json.dumps(payload).encode("utf-8")
        raw_headers = [(b"content-type", b"application/json")]
        raw_headers.extend(
            (key.encode("latin-1"), value.encode("latin-1"))
            for key, value in (headers or {}).items()
        )
        await send(
            {
                "type": "http.response.start",
                "status": status,
                "headers": raw_headers,
            }
        )
        await send({"type": "http.response.body", "body": body})


def create_app(
    db_path: str | Path = ":memory:",
    env: Mapping[str, str] | None = None,
    client_factory: ClientFactory | None = None,
) -> ServerApp:
    return ServerApp(db_path=db_path, env=env, client_factory=client_factory)


app = ASGIServer()


def main() -> int:
    parser = argparse.ArgumentParser(description="handoff-bot ASGI server entrypoint")
    parser.add_argument(
        "--print-startup",
        action="store_true",
        help="print the supported uvicorn startup command and exit",
    )
    args = parser.parse_args()

    if args.print_startup:
        print("uvicorn handoff_bot.control_plane.api.app:app --host 127.0.0.1 --port 8000")
        return 0

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
