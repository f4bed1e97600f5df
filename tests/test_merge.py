"""Tests for last-writer-wins merging of remote records."""

from datetime import datetime, timedelta, timezone

import pytest

from cira.errors import TransportFailure
from cira.models.entities import CapturedItem, SyncState
from cira.models.remote import ChapterRecord, PostRecord
from cira.sync.events import SyncEventKind

from conftest import JPEG_BYTES, OWNER, drain_events

T0 = datetime(2026, 1, 19, 10, 0, tzinfo=timezone.utc)


def _record(updated_at=T0, **overrides):
    fields = dict(
        id="p1",
        owner_id=OWNER,
        image_path="users/u/image_p1.jpg",
        message="remote",
        created_at=T0 - timedelta(days=1),
        updated_at=updated_at,
    )
    fields.update(overrides)
    return PostRecord(**fields)


@pytest.fixture
def seeded_objects(objects):
    objects.buckets["photos"]["users/u/image_p1.jpg"] = JPEG_BYTES
    return objects


def _local(store, blobs, caption="local", updated_at=T0):
    blobs.put_bytes("images", "p1.jpg", b"local-bytes")
    store.insert_item(
        CapturedItem(
            id="p1",
            owner_id=OWNER,
            image_file="p1.jpg",
            thumbnail_file="p1.jpg",
            caption=caption,
            created_at=T0 - timedelta(days=1),
            updated_at=updated_at,
            sync_state=SyncState.SYNCED,
        )
    )


@pytest.mark.asyncio
async def test_tie_keeps_local_copy(merger, store, blobs, seeded_objects):
    _local(store, blobs)

    result = await merger.apply("captures", _record(updated_at=T0))

    assert result == "unchanged"
    assert store.get_item("p1").caption == "local"
    assert blobs.read_bytes("images", "p1.jpg") == b"local-bytes"


@pytest.mark.asyncio
async def test_newer_remote_replaces_and_refreshes_blob(merger, store, blobs, seeded_objects):
    _local(store, blobs)

    result = await merger.apply("captures", _record(updated_at=T0 + timedelta(seconds=1)))

    assert result == "updated"
    item = store.get_item("p1")
    assert item.caption == "remote"
    assert item.thumbnail_file == "p1.jpg"
    assert blobs.read_bytes("images", "p1.jpg") == JPEG_BYTES


@pytest.mark.asyncio
async def test_older_remote_is_ignored(merger, store, blobs, seeded_objects):
    _local(store, blobs)
    assert await merger.apply("captures", _record(updated_at=T0 - timedelta(hours=1))) == "unchanged"


@pytest.mark.asyncio
async def test_voice_path_parsed_from_public_url(merger, store, blobs, seeded_objects):
    seeded_objects.buckets["audios"]["users/u/voice_p1.m4a"] = b"voice"
    record = _record(
        voice_url="https://example.test/storage/v1/object/public/audios/users/u/voice_p1.m4a",
        voice_duration=2.0,
    )

    assert await merger.apply("captures", record) == "created"

    item = store.get_item("p1")
    assert item.voice.duration == 2.0
    assert blobs.read_bytes("voice", item.voice.audio_file) == b"voice"


@pytest.mark.asyncio
async def test_locally_deleted_record_is_skipped(merger, store, seeded_objects):
    store.queue_delete("captures", "p1", OWNER, {"photos": ["image_p1.jpg"]})

    assert await merger.apply("captures", _record()) == "skipped"
    assert store.get_item("p1") is None


@pytest.mark.asyncio
async def test_missing_remote_object_raises_and_leaves_store_untouched(merger, store, objects):
    with pytest.raises(TransportFailure):
        await merger.apply("captures", _record())
    assert store.get_item("p1") is None


@pytest.mark.asyncio
async def test_apply_publishes_remote_applied(merger, bus, seeded_objects):
    async with bus.listen() as queue:
        await merger.apply("captures", _record(), source="live")
        events = drain_events(queue)

    assert [e.kind for e in events] == [SyncEventKind.REMOTE_APPLIED]
    assert events[0].detail == {"result": "created", "source": "live"}


@pytest.mark.asyncio
async def test_chapter_without_cover(merger, store):
    record = ChapterRecord(id="c1", owner_id=OWNER, name="Trip", created_at=T0, updated_at=T0)

    assert await merger.apply("collections", record) == "created"
    assert store.get_collection("c1").cover_file is None


def test_apply_delete_removes_item_and_blobs(merger, store, blobs):
    _local(store, blobs)

    assert merger.apply_delete("captures", "p1") is True
    assert store.get_item("p1") is None
    assert not blobs.exists("images", "p1.jpg")
    assert merger.apply_delete("captures", "p1") is False
