"""File-system cache for image, video and voice payloads."""

import logging
import shutil
from pathlib import Path
from typing import Literal, Optional

from ..paths import DataPaths

logger = logging.getLogger(__name__)

BlobKind = Literal["images", "thumbnails", "video", "voice", "covers"]

_EXTENSIONS: dict[str, str] = {
    "images": ".jpg",
    "thumbnails": ".jpg",
    "video": ".mov",
    "voice": ".m4a",
    "covers": ".jpg",
}


def blob_name(kind: BlobKind, entity_id: str) -> str:
    """Deterministic file name for an entity's payload of ``kind``."""
    return f"{entity_id}{_EXTENSIONS[kind]}"


class BlobCache:
    """Stores payload bytes under ``blobs/<kind>/<name>``.

    Entities reference blobs by name only; writes go through a temporary
    file and an atomic rename so a crash never leaves a truncated blob.
    """

    def __init__(self, paths: DataPaths):
        self.paths = paths
        self._dirs: dict[str, Path] = {kind: paths.blob_dir(kind) for kind in _EXTENSIONS}

    def path(self, kind: BlobKind, name: str) -> Path:
        return self._dirs[kind] / name

    def exists(self, kind: BlobKind, name: Optional[str]) -> bool:
        return bool(name) and self.path(kind, name).is_file()

    def put_bytes(self, kind: BlobKind, name: str, data: bytes) -> str:
        target = self.path(kind, name)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp_file = target.with_suffix(target.suffix + ".tmp")
        try:
            temp_file.write_bytes(data)
            temp_file.replace(target)
        except OSError:
            temp_file.unlink(missing_ok=True)
            raise
        return name

    def put_file(self, kind: BlobKind, name: str, source: Path) -> str:
        """Copy a file from outside the cache (e.g. a fresh capture)."""
        target = self.path(kind, name)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp_file = target.with_suffix(target.suffix + ".tmp")
        try:
            shutil.copyfile(source, temp_file)
            temp_file.replace(target)
        except OSError:
            temp_file.unlink(missing_ok=True)
            raise
        return name

    def read_bytes(self, kind: BlobKind, name: str) -> bytes:
        return self.path(kind, name).read_bytes()

    def delete(self, kind: BlobKind, name: Optional[str]) -> bool:
        """Remove a blob; a missing file is not an error."""
        if not name:
            return False
        target = self.path(kind, name)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        logger.debug(f"Removed blob {kind}/{name}")
        return True
