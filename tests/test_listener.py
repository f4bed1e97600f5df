"""Tests for the live change listener."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from cira.clock import format_timestamp
from cira.errors import DecodeFailure, NotAuthenticated, TransportFailure
from cira.models.entities import SyncState
from cira.remote.memory import InMemoryRecordStore
from cira.sync.events import SyncEventKind
from cira.sync.listener import ListenerState, LiveChangeListener, owner_subscriptions

from conftest import JPEG_BYTES, OWNER, drain_events

T0 = datetime(2026, 1, 19, 10, 0, tzinfo=timezone.utc)


def _post_row(post_id="p1", owner=OWNER, updated_at=T0, message="hi"):
    return {
        "id": post_id,
        "owner_id": owner,
        "image_path": f"users/{owner}/image_{post_id}.jpg",
        "message": message,
        "created_at": format_timestamp(T0 - timedelta(hours=1)),
        "updated_at": format_timestamp(updated_at),
    }


def _change(table, change_type, record=None, old_record=None):
    return {
        "data": {
            "table": table,
            "type": change_type,
            "record": record,
            "old_record": old_record,
            "commit_timestamp": format_timestamp(T0),
        }
    }


@pytest.fixture
def listener(change_feed, records, merger, bus):
    return LiveChangeListener(change_feed, records, merger, bus=bus)


@pytest.fixture
def photo(objects):
    objects.buckets["photos"]["users/u/image_p1.jpg"] = JPEG_BYTES
    return objects


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


def test_owner_subscriptions():
    chapters, posts = owner_subscriptions("u")
    assert chapters.channel == "chapters_u"
    assert chapters.filter == "owner_id=eq.u"
    assert posts.table == "posts"
    assert posts.filter is None


@pytest.mark.asyncio
async def test_update_for_unknown_item_inserts(listener, store, photo):
    listener.owner_id = OWNER

    result = await listener.handle_payload(_change("posts", "UPDATE", record=_post_row()))

    assert result == "created"
    item = store.get_item("p1")
    assert item.sync_state is SyncState.SYNCED
    assert item.caption == "hi"


@pytest.mark.asyncio
async def test_stale_update_is_unchanged(listener, store, photo):
    listener.owner_id = OWNER
    await listener.handle_payload(_change("posts", "INSERT", record=_post_row(message="new")))

    result = await listener.handle_payload(
        _change("posts", "UPDATE", record=_post_row(message="old", updated_at=T0 - timedelta(minutes=1)))
    )

    assert result == "unchanged"
    assert store.get_item("p1").caption == "new"


@pytest.mark.asyncio
async def test_delete_is_idempotent(listener, store, photo):
    listener.owner_id = OWNER
    await listener.handle_payload(_change("posts", "INSERT", record=_post_row()))

    first = await listener.handle_payload(_change("posts", "DELETE", old_record={"id": "p1"}))
    second = await listener.handle_payload(_change("chapters", "DELETE", old_record={"id": "c-unknown"}))

    assert first == "deleted"
    assert second == "missing"
    assert store.get_item("p1") is None


@pytest.mark.asyncio
async def test_other_users_posts_become_feed_events(listener, store, bus):
    listener.owner_id = OWNER

    async with bus.listen() as queue:
        result = await listener.handle_payload(_change("posts", "INSERT", record=_post_row(owner="friend")))
        events = drain_events(queue)

    assert result == "feed"
    assert store.get_item("p1") is None
    assert events[0].kind is SyncEventKind.FEED_POST_CHANGED
    assert events[0].detail["owner_id"] == "friend"


@pytest.mark.asyncio
async def test_legacy_payload_shape(listener, store, photo):
    listener.owner_id = OWNER
    payload = {"eventType": "INSERT", "table": "posts", "new": _post_row(), "old": {}}

    assert await listener.handle_payload(payload) == "created"


@pytest.mark.asyncio
async def test_unknown_table_is_ignored(listener):
    result = await listener.handle_payload(_change("profiles", "UPDATE", record={"id": "x"}))
    assert result == "ignored"


@pytest.mark.asyncio
async def test_malformed_payload_raises_decode_failure(listener):
    with pytest.raises(DecodeFailure):
        await listener.handle_payload({"data": {"table": "posts", "type": "DELETE", "old_record": {}}})
    with pytest.raises(DecodeFailure):
        await listener.handle_payload("not a dict")


@pytest.mark.asyncio
async def test_start_subscribes_and_applies_live_changes(listener, change_feed, store, photo):
    await listener.start_listening()

    assert listener.state is ListenerState.SUBSCRIBED
    assert {s.channel for s in change_feed.active_subscriptions} == {"chapters_u", "public_posts"}

    change_feed.publish("posts", _change("posts", "INSERT", record=_post_row()))
    await _settle()
    for _ in range(50):
        if store.get_item("p1") is not None:
            break
        await asyncio.sleep(0.01)

    assert store.get_item("p1") is not None
    await listener.stop_listening()


@pytest.mark.asyncio
async def test_bad_event_does_not_end_subscription(listener, change_feed, store, photo):
    await listener.start_listening()

    change_feed.publish("posts", {"data": {"table": "posts", "type": "UPDATE"}})
    change_feed.publish("posts", _change("posts", "INSERT", record=_post_row()))
    for _ in range(50):
        if store.get_item("p1") is not None:
            break
        await asyncio.sleep(0.01)

    assert store.get_item("p1") is not None
    assert listener.state is ListenerState.SUBSCRIBED
    await listener.stop_listening()


@pytest.mark.asyncio
async def test_reconnect_reregisters_subscriptions(listener, change_feed):
    await listener.start_listening()
    assert len(change_feed.subscribe_log) == 2

    await change_feed.simulate_reconnect()

    assert len(change_feed.subscribe_log) == 4
    assert len(change_feed.active_subscriptions) == 2
    assert listener.state is ListenerState.SUBSCRIBED
    await listener.stop_listening()


@pytest.mark.asyncio
async def test_stop_is_idempotent(listener, change_feed):
    await listener.stop_listening()
    await listener.start_listening()

    await listener.stop_listening()
    await listener.stop_listening()

    assert listener.state is ListenerState.DISCONNECTED
    assert change_feed.active_subscriptions == []
    assert not change_feed.connected


@pytest.mark.asyncio
async def test_start_requires_identity(change_feed, merger):
    listener = LiveChangeListener(change_feed, InMemoryRecordStore(identity=None), merger)
    with pytest.raises(NotAuthenticated):
        await listener.start_listening()
    assert listener.state is ListenerState.DISCONNECTED


@pytest.mark.asyncio
async def test_connect_failure_resets_state(listener, change_feed):
    change_feed.fail_connect = True
    with pytest.raises(TransportFailure):
        await listener.start_listening()
    assert listener.state is ListenerState.DISCONNECTED
