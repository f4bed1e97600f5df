"""Pytest fixtures for Cira sync tests."""

import pytest

from cira.config import BackendConfig, CiraConfig, SyncTuning
from cira.ledger import LedgerWriter
from cira.paths import DataPaths
from cira.remote.memory import InMemoryChangeFeed, InMemoryObjectStore, InMemoryRecordStore
from cira.store.blobs import BlobCache
from cira.store.db import LocalStore
from cira.sync.events import EventBus
from cira.sync.merge import RemoteMerger
from cira.sync.outbox import OutboxSyncEngine

OWNER = "u"

# Minimal JPEG header; content is never decoded
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"cira-test-image" + b"\xff\xd9"


@pytest.fixture
def data_root(tmp_path):
    """Create a temporary data root for testing.

    Args:
        tmp_path: pytest's built-in temporary directory fixture

    Returns:
        Path to temporary data root
    """
    root = tmp_path / "cira_data"
    root.mkdir()
    return root


@pytest.fixture
def cira_config(data_root):
    """CiraConfig pointing at the temporary data root, with fast retries."""
    return CiraConfig(
        data_root=data_root,
        backend=BackendConfig(api_url="https://example.test", api_key="anon"),
        sync=SyncTuning(retry_base_seconds=1, retry_max_seconds=8, pull_page_size=2, reconnect_delay_seconds=0),
    )


@pytest.fixture
def data_paths(cira_config):
    """DataPaths for the temporary root with every directory created."""
    paths = DataPaths.from_config(cira_config).ensure()
    paths.ledger_file.touch()
    return paths


@pytest.fixture
def store(data_paths):
    return LocalStore(data_paths.db_file)


@pytest.fixture
def blobs(data_paths):
    return BlobCache(data_paths)


@pytest.fixture
def ledger_writer(data_paths):
    return LedgerWriter(data_paths.ledger_file)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def records():
    return InMemoryRecordStore(identity=OWNER)


@pytest.fixture
def objects():
    return InMemoryObjectStore()


@pytest.fixture
def change_feed():
    return InMemoryChangeFeed()


@pytest.fixture
def image_file(tmp_path):
    """A photo on disk, outside the data root."""
    path = tmp_path / "photo.jpg"
    path.write_bytes(JPEG_BYTES)
    return path


@pytest.fixture
def voice_file(tmp_path):
    path = tmp_path / "note.m4a"
    path.write_bytes(b"voice-bytes")
    return path


@pytest.fixture
def video_file(tmp_path):
    path = tmp_path / "live.mov"
    path.write_bytes(b"video-bytes")
    return path


@pytest.fixture
def outbox(store, blobs, records, objects, cira_config, bus, ledger_writer, data_paths):
    """Outbox engine wired to in-memory backends, always online."""
    return OutboxSyncEngine(
        store,
        blobs,
        records,
        objects,
        backend=cira_config.backend,
        tuning=cira_config.sync,
        bus=bus,
        ledger=ledger_writer,
        paths=data_paths,
    )


@pytest.fixture
def merger(store, blobs, objects, cira_config, bus, ledger_writer):
    return RemoteMerger(store, blobs, objects, backend=cira_config.backend, bus=bus, ledger=ledger_writer)


def drain_events(queue):
    """Pop every event currently queued on an EventBus subscription."""
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events
