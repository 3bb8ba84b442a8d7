from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from cordbridge.cli.commands import app
from cordbridge.config import loader
from cordbridge.config.schema import Config, ProjectsConfig, StorageConfig
from cordbridge.projects.registry import PROJECT_FILE
from cordbridge.sessions.store import SessionStore

runner = CliRunner()


@pytest.fixture
def config(tmp_path, monkeypatch) -> Config:
    cfg = Config(
        projects=ProjectsConfig(root=str(tmp_path / "projects")),
        storage=StorageConfig(sessions_db=str(tmp_path / "data" / "sessions.db")),
    )
    monkeypatch.setattr(loader, "load_config", lambda config_path=None: cfg)
    return cfg


def test_version() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "cordbridge v" in result.stdout


def test_add_project_then_list(config) -> None:
    result = runner.invoke(
        app, ["add-project", "webapp", "--channel-id", "123", "--permission-mode", "plan"]
    )
    assert result.exit_code == 0
    data = json.loads((config.projects_root / "webapp" / PROJECT_FILE).read_text(encoding="utf-8"))
    assert data == {"channelId": "123", "permissionMode": "plan"}

    listing = runner.invoke(app, ["projects"])
    assert listing.exit_code == 0
    assert "webapp" in listing.stdout


def test_add_project_rejects_unknown_mode(config) -> None:
    result = runner.invoke(app, ["add-project", "webapp", "--channel-id", "1", "--permission-mode", "yolo"])
    assert result.exit_code == 1
    assert not (config.projects_root / "webapp").exists()


def test_projects_fails_without_root(config) -> None:
    result = runner.invoke(app, ["projects"])
    assert result.exit_code == 1


def test_sessions_export_and_clear(config) -> None:
    store = SessionStore(config.sessions_db_path)
    store.set("c1", "s1", "webapp")
    store.save("c1", "before")
    store.close()

    exported = runner.invoke(app, ["sessions", "export"])
    assert exported.exit_code == 0
    payload = json.loads(exported.stdout)
    assert payload["sessions"][0]["session_id"] == "s1"
    assert [s["label"] for s in payload["saved"]["c1"]] == ["before"]

    cleared = runner.invoke(app, ["sessions", "clear", "c1"])
    assert cleared.exit_code == 0

    store = SessionStore(config.sessions_db_path)
    try:
        assert store.get("c1") is None
    finally:
        store.close()


def test_run_refuses_to_start_without_credentials(config) -> None:
    result = runner.invoke(app, ["run"])
    assert result.exit_code == 1
    assert "DISCORD_TOKEN" in result.stdout


def test_sessions_export_keeps_saved_sessions_of_cleared_channels(config) -> None:
    store = SessionStore(config.sessions_db_path)
    store.set("c1", "s1", "webapp")
    store.save("c1", "before")
    store.clear("c1")
    store.close()

    exported = runner.invoke(app, ["sessions", "export"])

    assert exported.exit_code == 0
    payload = json.loads(exported.stdout)
    assert payload["sessions"] == []
    assert [s["session_id"] for s in payload["saved"]["c1"]] == ["s1"]
