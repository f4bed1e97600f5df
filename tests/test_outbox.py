"""Tests for the outbox drain."""

import asyncio
import json
from datetime import timedelta

import pytest

from cira.capture import create_capture, create_collection, delete_capture
from cira.clock import utc_now
from cira.config import SyncTuning
from cira.errors import NetworkUnavailable, NotAuthenticated, PartialBatchFailure
from cira.models.entities import SyncState
from cira.remote.memory import InMemoryObjectStore
from cira.sync.events import SyncEventKind
from cira.sync.outbox import OutboxSyncEngine, retry_delay, storage_path

from conftest import OWNER, drain_events


def test_storage_path_is_deterministic():
    assert storage_path("u", "image_a.jpg") == "users/u/image_a.jpg"


def test_retry_delay_doubles_and_caps():
    tuning = SyncTuning(retry_base_seconds=5, retry_max_seconds=30)
    assert retry_delay(1, tuning) == timedelta(seconds=5)
    assert retry_delay(2, tuning) == timedelta(seconds=10)
    assert retry_delay(3, tuning) == timedelta(seconds=20)
    assert retry_delay(10, tuning) == timedelta(seconds=30)


@pytest.mark.asyncio
async def test_drain_uploads_image_then_record(outbox, store, blobs, ledger_writer, records, objects, image_file):
    item = create_capture(store, blobs, ledger_writer, image_file, caption="first")

    report = await outbox.drain_pending()

    path = f"users/{OWNER}/image_{item.id}.jpg"
    assert objects.buckets["photos"][path] == image_file.read_bytes()
    row = records.row("posts", item.id)
    assert row["image_path"] == path
    assert row["owner_id"] == OWNER
    assert row["message"] == "first"

    stored = store.get_item(item.id)
    assert stored.sync_state is SyncState.SYNCED
    assert stored.owner_id == OWNER
    assert report.outcome_for(item.id).status == "synced"
    assert report.synced_count == 1


@pytest.mark.asyncio
async def test_voice_uploaded_with_public_url(outbox, store, blobs, ledger_writer, records, objects, image_file, voice_file):
    item = create_capture(store, blobs, ledger_writer, image_file, voice_source=voice_file, voice_duration=4.0)

    await outbox.drain_pending()

    voice_path = f"users/{OWNER}/voice_{item.id}.m4a"
    assert voice_path in objects.buckets["audios"]
    row = records.row("posts", item.id)
    assert row["voice_path"] == voice_path
    assert row["voice_url"] == objects.public_url("audios", voice_path)
    assert row["voice_duration"] == 4.0


@pytest.mark.asyncio
async def test_reupload_overwrites_same_paths(outbox, store, blobs, ledger_writer, records, objects, image_file):
    """A retry after a crash writes the same object, never a second copy."""
    item = create_capture(store, blobs, ledger_writer, image_file)
    await outbox.drain_pending()
    store.mark_pending("captures", item.id)

    await outbox.drain_pending()

    assert list(objects.buckets["photos"]) == [f"users/{OWNER}/image_{item.id}.jpg"]
    assert objects.uploads.count(("photos", f"users/{OWNER}/image_{item.id}.jpg")) == 2
    assert list(records.tables["posts"]) == [item.id]
    assert records.calls.count(("upsert", "posts")) == 2


@pytest.mark.asyncio
async def test_partial_failure_keeps_going(outbox, store, blobs, ledger_writer, records, objects, image_file):
    good = create_capture(store, blobs, ledger_writer, image_file)
    bad = create_capture(store, blobs, ledger_writer, image_file)
    objects.failing_paths.add(f"users/{OWNER}/image_{bad.id}.jpg")

    report = await outbox.drain_pending()

    assert report.outcome_for(good.id).status == "synced"
    assert report.outcome_for(bad.id).status == "failed"
    assert records.row("posts", bad.id) is None

    failed = store.get_item(bad.id)
    assert failed.sync_state is SyncState.FAILED
    assert failed.sync_attempts == 1
    assert failed.next_attempt_at > utc_now()

    with pytest.raises(PartialBatchFailure) as exc_info:
        report.raise_for_failures()
    assert exc_info.value.report is report


@pytest.mark.asyncio
async def test_failed_item_waits_for_backoff_unless_forced(outbox, store, blobs, ledger_writer, objects, image_file):
    item = create_capture(store, blobs, ledger_writer, image_file)
    objects.failing_paths.add(f"users/{OWNER}/image_{item.id}.jpg")
    await outbox.drain_pending()
    objects.failing_paths.clear()
    store.mark_failed("captures", item.id, "still backing off", utc_now() + timedelta(hours=1))

    report = await outbox.drain_pending()
    assert report.outcome_for(item.id) is None

    report = await outbox.drain_pending(force=True)
    assert report.outcome_for(item.id).status == "synced"


@pytest.mark.asyncio
async def test_record_failure_after_upload_is_retryable(outbox, store, blobs, ledger_writer, records, image_file):
    item = create_capture(store, blobs, ledger_writer, image_file)
    records.fail_on["upsert"] = lambda table, record: True

    report = await outbox.drain_pending()

    outcome = report.outcome_for(item.id)
    assert outcome.status == "failed"
    assert outcome.remote_paths == [f"photos/users/{OWNER}/image_{item.id}.jpg"]
    assert store.get_item(item.id).sync_state is SyncState.FAILED


@pytest.mark.asyncio
async def test_concurrent_drain_is_skipped(outbox, store, blobs, ledger_writer, image_file):
    create_capture(store, blobs, ledger_writer, image_file)

    first, second = await asyncio.gather(outbox.drain_pending(), outbox.drain_pending())

    assert not first.skipped
    assert second.skipped
    assert second.outcomes == []
    assert not outbox.is_draining


class _EditingObjectStore(InMemoryObjectStore):
    """Edits the item while its image is being uploaded."""

    def __init__(self, store, item_id):
        super().__init__()
        self.store = store
        self.item_id = item_id

    def upload(self, bucket, path, data, content_type):
        if path.endswith(f"image_{self.item_id}.jpg") and len(self.uploads) == 0:
            self.store.edit_item(self.item_id, caption="edited during upload")
        return super().upload(bucket, path, data, content_type)


@pytest.mark.asyncio
async def test_edit_during_upload_requeues(store, blobs, ledger_writer, records, cira_config, image_file):
    item = create_capture(store, blobs, ledger_writer, image_file, caption="original")
    objects = _EditingObjectStore(store, item.id)
    engine = OutboxSyncEngine(store, blobs, records, objects, backend=cira_config.backend, tuning=cira_config.sync)

    report = await engine.drain_pending()

    assert report.outcome_for(item.id).status == "requeued"
    assert records.row("posts", item.id)["message"] == "original"
    assert store.get_item(item.id).sync_state is SyncState.PENDING

    await engine.drain_pending()
    assert records.row("posts", item.id)["message"] == "edited during upload"
    assert store.get_item(item.id).sync_state is SyncState.SYNCED


class _DeletingObjectStore(InMemoryObjectStore):
    """Deletes the item locally while its image is being uploaded."""

    def __init__(self, store, blobs, ledger_writer, item_id):
        super().__init__()
        self.delete_args = (store, blobs, ledger_writer, item_id)

    def upload(self, bucket, path, data, content_type):
        result = super().upload(bucket, path, data, content_type)
        if path.endswith(f"image_{self.delete_args[-1]}.jpg"):
            delete_capture(*self.delete_args)
        return result


@pytest.mark.asyncio
async def test_delete_during_upload_is_cleaned_up_remotely(
    store, blobs, ledger_writer, records, cira_config, image_file
):
    item = create_capture(store, blobs, ledger_writer, image_file)
    objects = _DeletingObjectStore(store, blobs, ledger_writer, item.id)
    engine = OutboxSyncEngine(store, blobs, records, objects, backend=cira_config.backend, tuning=cira_config.sync)

    report = await engine.drain_pending()

    statuses = {(o.entity_type, o.status) for o in report.outcomes if o.entity_id == item.id}
    assert statuses == {("captures", "skipped"), ("deletes", "deleted")}
    assert records.row("posts", item.id) is None
    assert objects.buckets["photos"] == {}
    assert store.get_item(item.id) is None
    assert store.list_pending_deletes() == []


@pytest.mark.asyncio
async def test_missing_image_is_skipped_not_uploaded(outbox, store, blobs, ledger_writer, records, image_file):
    item = create_capture(store, blobs, ledger_writer, image_file)
    blobs.delete("images", item.image_file)

    report = await outbox.drain_pending()

    assert report.outcome_for(item.id).status == "skipped"
    assert records.row("posts", item.id) is None
    assert store.get_item(item.id).sync_state is SyncState.PENDING


@pytest.mark.asyncio
async def test_offline_raises_network_unavailable(store, blobs, records, objects):
    engine = OutboxSyncEngine(store, blobs, records, objects, is_online=lambda: False)
    with pytest.raises(NetworkUnavailable):
        await engine.drain_pending()
    assert not engine.is_draining


@pytest.mark.asyncio
async def test_no_identity_raises_not_authenticated(store, blobs, objects, ledger_writer, image_file):
    from cira.remote.memory import InMemoryRecordStore

    item = create_capture(store, blobs, ledger_writer, image_file)
    engine = OutboxSyncEngine(store, blobs, InMemoryRecordStore(identity=None), objects)

    with pytest.raises(NotAuthenticated):
        await engine.drain_pending()
    assert store.get_item(item.id).sync_state is SyncState.PENDING


@pytest.mark.asyncio
async def test_collections_upload_with_cover(outbox, store, blobs, ledger_writer, records, objects, image_file):
    collection = create_collection(store, ledger_writer, "Trip", "Alps")
    item = create_capture(store, blobs, ledger_writer, image_file, collection_id=collection.id)

    await outbox.drain_pending()

    chapter = records.row("chapters", collection.id)
    assert chapter["name"] == "Trip"
    assert chapter["description_text"] == "Alps"
    assert chapter["cover_image_path"] == f"users/{OWNER}/chapter_cover_{collection.id}.jpg"
    assert records.row("posts", item.id)["chapter_id"] == collection.id
    assert records.calls.index(("upsert", "chapters")) < records.calls.index(("upsert", "posts"))


@pytest.mark.asyncio
async def test_queued_delete_removes_record_and_objects(outbox, store, blobs, ledger_writer, records, objects, image_file):
    item = create_capture(store, blobs, ledger_writer, image_file)
    await outbox.drain_pending()
    delete_capture(store, blobs, ledger_writer, item.id)

    report = await outbox.drain_pending()

    assert report.outcome_for(item.id).status == "deleted"
    assert records.row("posts", item.id) is None
    assert objects.buckets["photos"] == {}
    assert store.list_pending_deletes() == []


@pytest.mark.asyncio
async def test_failed_delete_stays_queued(outbox, store, blobs, ledger_writer, records, image_file):
    item = create_capture(store, blobs, ledger_writer, image_file)
    await outbox.drain_pending()
    delete_capture(store, blobs, ledger_writer, item.id)
    records.fail_on["delete"] = lambda table, filters: True

    report = await outbox.drain_pending()

    assert report.outcome_for(item.id).status == "failed"
    entries = store.list_pending_deletes()
    assert entries[0]["attempts"] == 1


@pytest.mark.asyncio
async def test_drain_publishes_events_and_writes_trace(outbox, bus, store, blobs, ledger_writer, data_paths, image_file):
    item = create_capture(store, blobs, ledger_writer, image_file)

    async with bus.listen() as queue:
        await outbox.drain_pending()
        events = drain_events(queue)

    kinds = [e.kind for e in events]
    assert SyncEventKind.ENTITY_SYNCED in kinds
    assert kinds[-1] is SyncEventKind.DRAIN_FINISHED
    assert events[0].entity_id == item.id

    traces = list(data_paths.traces_drain.rglob("drain_*.json"))
    assert len(traces) == 1
    trace = json.loads(traces[0].read_text())
    assert trace["counts"]["synced"] == 1

    ledger_types = [json.loads(line)["event_type"] for line in data_paths.ledger_file.read_text().splitlines()]
    assert "ITEM_SYNCED" in ledger_types
    assert ledger_types[-1] == "DRAIN_COMPLETED"
