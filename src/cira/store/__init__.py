"""Local persistence: SQLite entity store and blob cache."""

from .blobs import BlobCache, BlobKind, blob_name
from .db import ApplyResult, LocalStore

__all__ = ["ApplyResult", "BlobCache", "BlobKind", "LocalStore", "blob_name"]
