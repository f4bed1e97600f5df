"""Configuration management for the Cira sync engine."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib  # Python < 3.11


def _find_repo_root(start_dir: Path) -> Path:
    """Find repository root by walking upward looking for .git or pyproject.toml."""
    current_dir = start_dir

    while True:
        if (current_dir / ".git").exists() or (current_dir / "pyproject.toml").exists():
            return current_dir

        parent_dir = current_dir.parent

        # Stop if we reach filesystem root
        if parent_dir == current_dir:
            return start_dir

        current_dir = parent_dir


def _load_repo_config_data(repo_root: Path) -> Optional[dict]:
    """Load repo config data from .cira/config.toml if it exists."""
    config_file = repo_root / ".cira" / "config.toml"

    if not config_file.exists():
        return None

    try:
        with open(config_file, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        # A malformed config file is ignored, env and defaults still apply
        return None


def _get_repo_config_value(data: Optional[dict], keys: list[str]) -> Optional[object]:
    """Safely get a nested repo config value."""
    if not data:
        return None
    current = data
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    return current


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _pick(env_name: str, repo_value: Optional[object], default: str) -> str:
    """Environment beats repo config, repo config beats the default."""
    env_value = os.environ.get(env_name)
    if env_value:
        return env_value
    if repo_value is not None and str(repo_value) != "":
        return str(repo_value)
    return default


def resolve_data_root(cli_data_root: Optional[str] = None) -> Path:
    """Resolve the local data directory with the following precedence:

    1. CLI --data option (if provided)
    2. repo-local .cira/config.toml ``data_root`` (walk upward from CWD)
    3. CIRA_DATA_ROOT environment variable
    4. ~/.cira

    Returns:
        Absolute path to the data root (it may not exist yet)
    """
    if cli_data_root:
        return Path(cli_data_root).expanduser().resolve()

    repo_config = _load_repo_config_data(_find_repo_root(Path.cwd()))
    repo_value = _get_repo_config_value(repo_config, ["data_root"])
    if isinstance(repo_value, str) and repo_value:
        return Path(repo_value).expanduser().resolve()

    env_value = os.environ.get("CIRA_DATA_ROOT")
    if env_value:
        return Path(env_value).expanduser().resolve()

    return (Path.home() / ".cira").resolve()


class BackendConfig(BaseModel):
    """Connection settings for the hosted record/object/realtime backend."""

    api_url: str = Field(default="")
    api_key: str = Field(default="")
    access_token: str = Field(default="")
    realtime_url: str = Field(default="")
    photos_bucket: str = Field(default="photos")
    audios_bucket: str = Field(default="audios")
    http_timeout_seconds: float = Field(default=30.0)

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    def resolved_realtime_url(self) -> str:
        """Realtime websocket URL, derived from api_url when not set explicitly."""
        if self.realtime_url:
            return self.realtime_url
        base = self.api_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/realtime/v1/websocket"


class SyncTuning(BaseModel):
    """Knobs for the outbox, pull, listener and connectivity loops."""

    pull_page_size: int = Field(default=200)
    retry_base_seconds: float = Field(default=5.0)
    retry_max_seconds: float = Field(default=900.0)
    probe_interval_seconds: float = Field(default=15.0)
    reconnect_delay_seconds: float = Field(default=2.0)
    heartbeat_seconds: float = Field(default=25.0)
    listen_on_start: bool = Field(default=True)


class CiraConfig(BaseModel):
    """Configuration for the local data root and the sync engine."""

    data_root: Path = Field(
        default_factory=lambda: Path(os.environ.get("CIRA_DATA_ROOT", "./cira_data"))
    )
    backend: BackendConfig = Field(default_factory=BackendConfig)
    sync: SyncTuning = Field(default_factory=SyncTuning)

    model_config = {"frozen": False}

    @classmethod
    def from_env(cls, cli_data_root: Optional[str] = None) -> "CiraConfig":
        """Load configuration from repo config, environment variables or defaults.

        Args:
            cli_data_root: Data root from CLI --data option (highest precedence)
        """
        data_root = resolve_data_root(cli_data_root)
        repo = _load_repo_config_data(_find_repo_root(Path.cwd()))

        def backend_value(key: str) -> Optional[object]:
            return _get_repo_config_value(repo, ["backend", key])

        def sync_value(key: str) -> Optional[object]:
            return _get_repo_config_value(repo, ["sync", key])

        return cls(
            data_root=data_root,
            backend=BackendConfig(
                api_url=_pick("CIRA_API_URL", backend_value("api_url"), ""),
                api_key=_pick("CIRA_API_KEY", backend_value("api_key"), ""),
                access_token=_pick("CIRA_ACCESS_TOKEN", backend_value("access_token"), ""),
                realtime_url=_pick("CIRA_REALTIME_URL", backend_value("realtime_url"), ""),
                photos_bucket=_pick("CIRA_PHOTOS_BUCKET", backend_value("photos_bucket"), "photos"),
                audios_bucket=_pick("CIRA_AUDIOS_BUCKET", backend_value("audios_bucket"), "audios"),
                http_timeout_seconds=float(
                    _pick("CIRA_HTTP_TIMEOUT_SECONDS", backend_value("http_timeout_seconds"), "30")
                ),
            ),
            sync=SyncTuning(
                pull_page_size=int(_pick("CIRA_PULL_PAGE_SIZE", sync_value("pull_page_size"), "200")),
                retry_base_seconds=float(
                    _pick("CIRA_RETRY_BASE_SECONDS", sync_value("retry_base_seconds"), "5")
                ),
                retry_max_seconds=float(
                    _pick("CIRA_RETRY_MAX_SECONDS", sync_value("retry_max_seconds"), "900")
                ),
                probe_interval_seconds=float(
                    _pick("CIRA_PROBE_INTERVAL_SECONDS", sync_value("probe_interval_seconds"), "15")
                ),
                reconnect_delay_seconds=float(
                    _pick("CIRA_RECONNECT_DELAY_SECONDS", sync_value("reconnect_delay_seconds"), "2")
                ),
                heartbeat_seconds=float(
                    _pick("CIRA_HEARTBEAT_SECONDS", sync_value("heartbeat_seconds"), "25")
                ),
                listen_on_start=_env_bool("CIRA_LISTEN_ON_START", True),
            ),
        )

    def to_toml_str(self) -> str:
        """Generate a .cira/config.toml template (secrets left blank)."""
        return f"""# Cira sync configuration

data_root = "{self.data_root}"

[backend]
api_url = "{self.backend.api_url}"
api_key = ""
access_token = ""
realtime_url = "{self.backend.realtime_url}"
photos_bucket = "{self.backend.photos_bucket}"
audios_bucket = "{self.backend.audios_bucket}"
http_timeout_seconds = {self.backend.http_timeout_seconds}

[sync]
pull_page_size = {self.sync.pull_page_size}
retry_base_seconds = {self.sync.retry_base_seconds}
retry_max_seconds = {self.sync.retry_max_seconds}
probe_interval_seconds = {self.sync.probe_interval_seconds}
reconnect_delay_seconds = {self.sync.reconnect_delay_seconds}
heartbeat_seconds = {self.sync.heartbeat_seconds}
"""
