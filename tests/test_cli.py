"""Smoke tests for the CLI commands that work without a backend."""

import pytest
from typer.testing import CliRunner

from cira.cli import app
from cira.store.db import LocalStore

runner = CliRunner()


@pytest.fixture
def cli_root(tmp_path, monkeypatch):
    for name in ("CIRA_DATA_ROOT", "CIRA_API_URL", "CIRA_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    root = tmp_path / "data"
    result = runner.invoke(app, ["--data", str(root), "init", "--no-write-config"])
    assert result.exit_code == 0, result.output
    return root


def _invoke(root, *args):
    return runner.invoke(app, ["--data", str(root), *args])


def test_init_is_idempotent(cli_root):
    assert (cli_root / "cira.sqlite").exists()
    assert (cli_root / "ledger.jsonl").exists()

    result = _invoke(cli_root, "init", "--no-write-config")
    assert result.exit_code == 0
    assert "already exists" in result.output


def test_commands_require_init(tmp_path):
    result = _invoke(tmp_path / "nowhere", "status")
    assert result.exit_code == 1
    assert "not initialized" in result.output


def test_capture_status_delete_flow(cli_root, image_file):
    assert _invoke(cli_root, "album", "create", "Trip").exit_code == 0
    album_id = LocalStore(cli_root / "cira.sqlite").list_collections()[0].id

    result = _invoke(cli_root, "capture", str(image_file), "--caption", "hi", "--album", album_id)
    assert result.exit_code == 0, result.output

    store = LocalStore(cli_root / "cira.sqlite")
    item = store.list_items()[0]
    assert item.collection_id == album_id

    result = _invoke(cli_root, "status")
    assert result.exit_code == 0
    assert "Total pending: 2" in result.output

    assert _invoke(cli_root, "delete", item.id).exit_code == 0
    assert store.get_item(item.id) is None

    result = _invoke(cli_root, "ledger", "tail", "--n", "10", "--full")
    assert "CAPTURE_DELETED" in result.output


def test_capture_rejects_bad_visibility(cli_root, image_file):
    result = _invoke(cli_root, "capture", str(image_file), "--visibility", "everyone")
    assert result.exit_code == 1


def test_sync_requires_backend(cli_root):
    result = _invoke(cli_root, "sync")
    assert result.exit_code == 1
    assert "backend not configured" in result.output


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "0.3.0" in result.output
