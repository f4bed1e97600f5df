"""Tests for configuration resolution."""

from pathlib import Path

import pytest

from cira.config import BackendConfig, CiraConfig, resolve_data_root

ENV_VARS = [
    "CIRA_DATA_ROOT",
    "CIRA_API_URL",
    "CIRA_API_KEY",
    "CIRA_ACCESS_TOKEN",
    "CIRA_PHOTOS_BUCKET",
    "CIRA_PULL_PAGE_SIZE",
    "CIRA_LISTEN_ON_START",
]


@pytest.fixture
def repo(tmp_path, monkeypatch):
    """An empty repository as CWD with no Cira environment set."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    root = tmp_path / "repo"
    (root / ".git").mkdir(parents=True)
    monkeypatch.chdir(root)
    return root


def _write_repo_config(repo, text):
    config_dir = repo / ".cira"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "config.toml").write_text(text)


def test_cli_data_root_wins(repo, monkeypatch):
    monkeypatch.setenv("CIRA_DATA_ROOT", str(repo / "from_env"))
    assert resolve_data_root(str(repo / "from_cli")) == (repo / "from_cli").resolve()


def test_repo_config_beats_env(repo, monkeypatch):
    _write_repo_config(repo, f'data_root = "{repo / "from_repo"}"\n')
    monkeypatch.setenv("CIRA_DATA_ROOT", str(repo / "from_env"))
    assert resolve_data_root() == (repo / "from_repo").resolve()


def test_env_then_home_default(repo, monkeypatch):
    monkeypatch.setenv("CIRA_DATA_ROOT", str(repo / "from_env"))
    assert resolve_data_root() == (repo / "from_env").resolve()

    monkeypatch.delenv("CIRA_DATA_ROOT")
    assert resolve_data_root() == (Path.home() / ".cira").resolve()


def test_from_env_reads_backend_and_tuning(repo, monkeypatch):
    _write_repo_config(
        repo,
        '[backend]\napi_url = "https://repo.test"\nphotos_bucket = "pics"\n\n[sync]\npull_page_size = 50\n',
    )
    monkeypatch.setenv("CIRA_API_URL", "https://env.test")
    monkeypatch.setenv("CIRA_API_KEY", "anon")
    monkeypatch.setenv("CIRA_LISTEN_ON_START", "false")

    config = CiraConfig.from_env(str(repo / "data"))

    assert config.backend.api_url == "https://env.test"
    assert config.backend.photos_bucket == "pics"
    assert config.backend.audios_bucket == "audios"
    assert config.sync.pull_page_size == 50
    assert config.sync.listen_on_start is False
    assert config.backend.is_configured


def test_malformed_repo_config_is_ignored(repo):
    _write_repo_config(repo, "this is [not toml")
    config = CiraConfig.from_env(str(repo / "data"))
    assert config.backend.api_url == ""
    assert not config.backend.is_configured


def test_realtime_url_derivation():
    assert BackendConfig(api_url="https://x.test/").resolved_realtime_url() == "wss://x.test/realtime/v1/websocket"
    assert BackendConfig(api_url="http://localhost:54321").resolved_realtime_url() == (
        "ws://localhost:54321/realtime/v1/websocket"
    )
    assert BackendConfig(realtime_url="wss://rt.test/ws").resolved_realtime_url() == "wss://rt.test/ws"


def test_toml_template_leaves_secrets_blank(repo):
    config = CiraConfig(data_root=repo / "data", backend=BackendConfig(api_url="https://x.test", api_key="secret"))
    text = config.to_toml_str()
    assert 'api_url = "https://x.test"' in text
    assert "secret" not in text
