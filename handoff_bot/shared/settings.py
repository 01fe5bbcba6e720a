"""Shared runtime settings for local-first disk-backed storage."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class StorageSettings:
    """Filesystem and SQLite locations used by local-first deployments."""

    data_dir: Path
    sqlite_path: Path
    log_level: str

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "StorageSettings":
        source = os.environ if env is None else env
        data_dir = Path(source.get("HANDOFF_BOT_DATA_DIR", "./data"))
        sqlite_path = Path(
            source.get(
                "HANDOFF_BOT_SQLITE_PATH", str(data_dir / "control_plane" / "handoff_bot.sqlite")
            )
        )
        log_level = (source.get("HANDOFF_BOT_LOG_LEVEL") or "INFO").strip().upper()
        return cls(data_dir=data_dir, sqlite_path=sqlite_path, log_level=log_level)

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)


def get_storage_settings(env: dict[str, str] | None = None) -> StorageSettings:
    """Build and hydrate storage settings from environment variables."""

    settings = StorageSettings.from_env(env)
    settings.ensure_directories()
    return settings
