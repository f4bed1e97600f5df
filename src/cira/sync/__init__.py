"""Sync engines: outbox, pull, live listener, connectivity and the service wiring them."""

from .connectivity import ConnectivityMonitor, ConnectivityState, http_probe
from .events import EventBus, SyncEvent, SyncEventKind
from .feed import FeedReader
from .listener import ListenerState, LiveChangeListener
from .merge import RemoteMerger
from .outbox import OutboxSyncEngine
from .pull import PullEngine
from .repair import repair_incomplete_uploads
from .service import SyncService

__all__ = [
    "ConnectivityMonitor",
    "ConnectivityState",
    "EventBus",
    "FeedReader",
    "ListenerState",
    "LiveChangeListener",
    "OutboxSyncEngine",
    "PullEngine",
    "RemoteMerger",
    "SyncEvent",
    "SyncEventKind",
    "SyncService",
    "http_probe",
    "repair_incomplete_uploads",
]
