from pathlib import Path

from handoff_bot.control_plane.db.db import OrchestratorDB
from handoff_bot.shared.settings import get_storage_settings


def test_storage_settings_create_local_first_directories(tmp_path: Path) -> None:
    env = {
        "HANDOFF_BOT_DATA_DIR": str(tmp_path / "data"),
        "HANDOFF_BOT_SQLITE_PATH": str(tmp_path / "data" / "control_plane" / "handoff.sqlite"),
        "HANDOFF_BOT_LOG_LEVEL": "debug",
    }

    settings = get_storage_settings(env)

    assert settings.data_dir.exists()
    assert settings.sqlite_path.parent.exists()
    assert settings.log_level == "DEBUG"


def test_sqlite_connection_uses_wal_and_busy_timeout(tmp_path: Path) -> None:
    db = OrchestratorDB(tmp_path / "control_plane" / "handoff.sqlite")

    journal_mode = db.conn.execute("PRAGMA journal_mode").fetchone()[0]
    busy_timeout = db.conn.execute("PRAGMA busy_timeout").fetchone()[0]

    assert str(journal_mode).lower() == "wal"
    assert int(busy_timeout) == 5000


def test_work_item_updates_are_version_checked() -> None:
    db = OrchestratorDB()
    row = db.create_work_item("Versioned", work_item_id="0123ABCD-0000-4000-8000-000000000000")

    assert row["short_id"] == "0123abcd"
    assert db.update_work_item(row["id"], 0, {"owner": "octo"}) is True
    assert db.update_work_item(row["id"], 0, {"owner": "late"}) is False
    assert db.get_work_item(row["id"])["version"] == 1
    assert [found["id"] for found in db.find_work_items_by_short_id("0123ABCD")] == [row["id"]]


def test_operation_metrics_accumulate_per_outcome() -> None:
    db = OrchestratorDB()
    db.record_operation_metric("issue_create", "success", 10.0)
    db.record_operation_metric("issue_create", "success", 5.0)
    db.record_operation_metric("issue_create", "failure", 1.0)

    assert db.list_operation_metrics() == [
        {
            "operation_family": "issue_create",
            "outcome": "failure",
            "count": 1,
            "total_latency_ms": 1.0,
        },
        {
            "operation_family": "issue_create",
            "outcome": "success",
            "count": 2,
            "total_latency_ms": 15.0,
        },
    ]
