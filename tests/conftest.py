from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from handoff_bot.control_plane.api.app import ServerApp
from handoff_bot.control_plane.github.github_connector_inmemory import InMemoryGitHubConnector

REPO = "acme/widgets"


def engine_env(**overrides: str) -> dict[str, str]:
    env = {
        "HANDOFF_BOT_STAGE": "test",
        "HANDOFF_BOT_GITHUB_REPO": REPO,
        "HANDOFF_BOT_ALLOWED_REPOS": REPO,
        "HANDOFF_BOT_IMPLEMENT_LABEL": "implement",
        "HANDOFF_BOT_IMPLEMENT_COMMENT": "Please implement #{issue_number} ({short_id})",
    }
    env.update(overrides)
    return {key: value for key, value in env.items() if value}


@pytest.fixture
def connector() -> InMemoryGitHubConnector:
    return InMemoryGitHubConnector()


@pytest.fixture
def service(tmp_path: Path, connector: InMemoryGitHubConnector) -> Iterator[ServerApp]:
    app = ServerApp(
        db_path=tmp_path / "handoff.sqlite",
        env=engine_env(),
        client_factory=lambda: connector,
    )
    yield app
    app.db.close()
