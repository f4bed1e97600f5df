"""Path management for the local Cira data root."""

from datetime import datetime
from pathlib import Path

from .config import CiraConfig

BLOB_KINDS = ("images", "thumbnails", "video", "voice", "covers")
TRACE_KINDS = ("drain", "pull")


class DataPaths:
    """Layout of the data root: sqlite db, ledger, blob cache and run traces."""

    def __init__(self, data_root: Path):
        self.root = data_root
        self.db_file = data_root / "cira.sqlite"
        self.ledger_file = data_root / "ledger.jsonl"

        self.blobs = data_root / "blobs"

        self.traces = data_root / "traces"
        self.traces_drain = self.traces / "drain"
        self.traces_pull = self.traces / "pull"

    @classmethod
    def from_config(cls, config: CiraConfig) -> "DataPaths":
        return cls(config.data_root)

    def get_all_directories(self) -> list[Path]:
        """Directories `cira init` creates, parents first."""
        dirs = [self.root, self.blobs]
        dirs += [self.blob_dir(kind) for kind in BLOB_KINDS]
        dirs.append(self.traces)
        dirs += [self.traces / kind for kind in TRACE_KINDS]
        return dirs

    def blob_dir(self, kind: str) -> Path:
        return self.blobs / kind

    def ensure(self) -> "DataPaths":
        for directory in self.get_all_directories():
            directory.mkdir(parents=True, exist_ok=True)
        return self

    def trace_folder(self, kind: str, day: datetime) -> Path:
        """Per-day folder for drain or pull traces, e.g. traces/pull/2026-01-19."""
        if kind not in TRACE_KINDS:
            raise ValueError(f"Unknown trace kind: {kind}")
        return self.traces / kind / day.strftime("%Y-%m-%d")
