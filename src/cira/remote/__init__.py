"""Remote service interfaces and their HTTP, realtime and in-memory implementations."""

from .base import ChangeFeed, ChangeStream, Filter, ObjectStore, RecordStore
from .memory import InMemoryChangeFeed, InMemoryObjectStore, InMemoryRecordStore
from .realtime import RealtimeChangeFeed
from .rest import RestObjectStore, RestRecordStore, create_session

__all__ = [
    "ChangeFeed",
    "ChangeStream",
    "Filter",
    "ObjectStore",
    "RecordStore",
    "InMemoryChangeFeed",
    "InMemoryObjectStore",
    "InMemoryRecordStore",
    "RealtimeChangeFeed",
    "RestObjectStore",
    "RestRecordStore",
    "create_session",
]
