from __future__ import annotations

import ast
from pathlib import Path

PACKAGE_ROOT = Path(__file__).resolve().parents[1] / "handoff_bot"


def _imported_modules(path: Path) -> list[str]:
    tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    names: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            names.extend(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom):
            names.append(node.module or "")
    return names


def test_core_layers_do_not_import_transport_or_cli() -> None:
    forbidden = ("handoff_bot.control_plane.api", "handoff_bot.cli", "typer", "uvicorn")
    core_dirs = ("orchestration", "db", "models", "config", "github")
    for directory in core_dirs:
        for path in (PACKAGE_ROOT / "control_plane" / directory).rglob("*.py"):
            for name in _imported_modules(path):
                assert not name.startswith(forbidden), f"{path} imports transport layer: {name}"


def test_only_the_api_connector_talks_http() -> None:
    for path in PACKAGE_ROOT.rglob("*.py"):
        if path.name == "github_connector_api.py":
            continue
        for name in _imported_modules(path):
            assert name != "requests", f"{path} imports requests directly"
