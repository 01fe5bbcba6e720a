"""handoff-bot operator CLI."""

from __future__ import annotations

import json
from typing import Any

import typer

from handoff_bot.control_plane.api.app import ServerApp, create_app
from handoff_bot.control_plane.config.config_resolver import (
    KEY_STAGE,
    EngineConfig,
    PolicyFileError,
)
from handoff_bot.control_plane.models.errors import OrchestrationError
from handoff_bot.control_plane.orchestration.preflight import PROFILES
from handoff_bot.shared.logging_setup import configure_logging
from handoff_bot.shared.settings import get_storage_settings

app = typer.Typer(add_completion=False, help="handoff-bot: idempotent GitHub handoff orchestrator")


def _service() -> ServerApp:
    settings = get_storage_settings()
    configure_logging(settings.log_level)
    try:
        return create_app(db_path=settings.sqlite_path)
    except PolicyFileError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=2) from exc


def _emit(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


def _run(action: Any) -> None:
    try:
        _emit(action())
    except OrchestrationError as exc:
        typer.echo(json.dumps(exc.as_dict(), indent=2, sort_keys=True), err=True)
        raise typer.Exit(code=1) from exc
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=2) from exc


@app.command("config-check")
def config_check() -> None:
    """Print the missing configuration keys for every operation."""
    try:
        config = EngineConfig.from_env()
    except PolicyFileError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=2) from exc

    report: dict[str, Any] = {}
    for name, profile in sorted(PROFILES.items()):
        required = [KEY_STAGE, *profile.required_config]
        if profile.repo_fallback_key:
            required.append(profile.repo_fallback_key)
        trigger_keys = [key for key, _default in profile.trigger_keys]
        missing_triggers = config.missing(trigger_keys)
        if not trigger_keys:
            trigger_status = "n/a"
        elif len(missing_triggers) == len(trigger_keys):
            trigger_status = "missing"
        elif missing_triggers:
            trigger_status = "degraded"
        else:
            trigger_status = "ok"
        report[name] = {
            "missing": config.missing(required),
            "missing_trigger_config": missing_triggers,
            "trigger_config": trigger_status,
        }
    _emit(report)


@app.command()
def create(
    title: str = typer.Option(..., "--title"),
    body: str = typer.Option("", "--body"),
    priority: str = typer.Option("", "--priority"),
    label: list[str] = typer.Option([], "--label"),
    repo: str = typer.Option("", "--repo"),
) -> None:
    """Create a work item in the local store."""
    service = _service()
    _run(
        lambda: service.create_work_item(
            {"title": title, "body": body, "priority": priority, "labels": label, "repo": repo}
        )
    )


@app.command()
def preflight(
    identifier: str = typer.Argument(...),
    operation: str = typer.Option(..., "--operation"),
) -> None:
    """Evaluate preflight for an operation without executing it."""
    service = _service()

    def _check() -> Any:
        result = service.orchestrator.check_preflight(operation, identifier)
        if result.decision is None:
            return {"operation": operation, "result": "passed"}
        return {"operation": operation, "result": "blocked", **result.decision.as_dict()}

    _run(_check)


@app.command()
def handoff(
    identifier: str = typer.Argument(...),
    mode: str = typer.Option("create", "--mode"),
    repo: str = typer.Option("", "--repo"),
    actor: str = typer.Option("cli", "--actor"),
) -> None:
    """Create or update the GitHub issue mirroring a work item."""
    service = _service()
    _run(lambda: service.handoff(identifier, actor=actor, mode=mode, repo=repo or None))


@app.command()
def trigger(
    identifier: str = typer.Argument(...),
    actor: str = typer.Option("cli", "--actor"),
) -> None:
    """Apply the implementation trigger label and comment."""
    service = _service()
    _run(lambda: service.trigger_implementation(identifier, actor=actor))


@app.command()
def implement(
    identifier: str = typer.Argument(...),
    base: str = typer.Option("", "--base"),
    actor: str = typer.Option("cli", "--actor"),
) -> None:
    """Create or reuse the work item branch and pull request."""
    service = _service()
    _run(lambda: service.implement(identifier, actor=actor, base_branch=base or None))


@app.command()
def status(
    identifier: str = typer.Argument(...),
    target: str = typer.Argument(...),
    actor: str = typer.Option("cli", "--actor"),
) -> None:
    """Move a work item to another lifecycle status."""
    service = _service()
    _run(lambda: service.set_status(identifier, target, actor=actor))


@app.command()
def runs(identifier: str = typer.Argument(...)) -> None:
    """Print the audit trail of a work item."""
    service = _service()
    _run(lambda: {"items": service.list_runs(identifier)})


@app.command("recover-stale")
def recover_stale(
    older_than: float = typer.Option(900.0, "--older-than", help="seconds in PENDING"),
) -> None:
    """Move handoffs stuck in PENDING to FAILED so they can be retried."""
    service = _service()
    _run(
        lambda: {
            "recovered": [
                item.id for item in service.orchestrator.recover_stale_pending(older_than)
            ]
        }
    )


if __name__ == "__main__":
    app()
