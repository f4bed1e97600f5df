"""Tests for the websocket change feed."""

import asyncio
import json

import pytest

from cira.config import BackendConfig, SyncTuning
from cira.models.events import Subscription
from cira.remote.realtime import RealtimeChangeFeed, join_message

POSTS = Subscription(channel="public_posts", table="posts")
CHAPTERS = Subscription(channel="chapters_u", table="chapters", filter="owner_id=eq.u")


class FakeSocket:
    """Websocket stand-in: yields ``messages`` once ``gate`` opens, then ends or holds."""

    def __init__(self, messages=(), hold=False):
        self.messages = list(messages)
        self.hold = hold
        self.gate = asyncio.Event()
        self.sent = []
        self.closed = asyncio.Event()

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed.set()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        await self.gate.wait()
        for message in self.messages:
            yield json.dumps(message)
        if self.hold:
            await self.closed.wait()


@pytest.fixture
def feed():
    backend = BackendConfig(api_url="https://example.test", api_key="anon", access_token="jwt")
    return RealtimeChangeFeed(backend, SyncTuning(reconnect_delay_seconds=0, heartbeat_seconds=3600))


def test_join_message_shape():
    message = join_message(CHAPTERS, "7", "jwt")

    assert message["topic"] == "realtime:chapters_u"
    assert message["event"] == "phx_join"
    assert message["ref"] == message["join_ref"] == "7"
    change = message["payload"]["config"]["postgres_changes"][0]
    assert change == {"event": "*", "schema": "public", "table": "chapters", "filter": "owner_id=eq.u"}
    assert message["payload"]["access_token"] == "jwt"


def test_join_message_without_filter():
    change = join_message(POSTS, "1", "")["payload"]["config"]["postgres_changes"][0]
    assert "filter" not in change


def test_connect_url_derived_from_api_url(feed):
    assert feed._connect_url() == "wss://example.test/realtime/v1/websocket?apikey=anon&vsn=1.0.0"


@pytest.mark.asyncio
async def test_dispatch_routes_changes_by_topic(feed):
    socket = FakeSocket()
    feed._websocket = socket
    stream = await feed.subscribe(POSTS)

    feed._dispatch(json.dumps({"topic": "realtime:public_posts", "event": "postgres_changes", "payload": {"n": 1}}))
    feed._dispatch(json.dumps({"topic": "realtime:other", "event": "postgres_changes", "payload": {"n": 2}}))
    feed._dispatch("not json")
    stream.end()

    assert [payload async for payload in stream] == [{"n": 1}]
    assert socket.sent[0]["event"] == "phx_join"


@pytest.mark.asyncio
async def test_unsubscribe_sends_leave_and_ends_stream(feed):
    socket = FakeSocket()
    feed._websocket = socket
    stream = await feed.subscribe(POSTS)

    await feed.unsubscribe(POSTS)
    await feed.unsubscribe(POSTS)

    assert stream.closed
    assert [m["event"] for m in socket.sent] == ["phx_join", "phx_leave"]


@pytest.mark.asyncio
async def test_dropped_socket_reconnects_and_fires_callbacks(feed, monkeypatch):
    change = {"topic": "realtime:public_posts", "event": "postgres_changes", "payload": {"n": 1}}
    first = FakeSocket([change])
    second = FakeSocket(hold=True)
    sockets = [first, second]

    async def fake_connect(url, **kwargs):
        return sockets.pop(0)

    monkeypatch.setattr("cira.remote.realtime.websockets.connect", fake_connect)

    reconnected = asyncio.Event()

    async def on_reconnect():
        reconnected.set()

    feed.add_reconnect_callback(on_reconnect)
    await feed.connect()
    stream = await feed.subscribe(POSTS)
    first.gate.set()

    await asyncio.wait_for(reconnected.wait(), timeout=2)
    payloads = [payload async for payload in stream]

    assert payloads == [{"n": 1}]
    assert feed._websocket is second

    second.gate.set()
    await feed.close()
    await feed.close()
    assert second.closed.is_set()


def test_dispatch_drops_frames_that_are_not_objects(feed, caplog):
    feed._dispatch(json.dumps([1, 2]))
    feed._dispatch(json.dumps("hello"))
    feed._dispatch(json.dumps({"topic": "realtime:public_posts", "event": "phx_reply", "payload": "oops"}))

    assert "not an object" in caplog.text


@pytest.mark.asyncio
async def test_bad_frame_keeps_reader_alive(feed, monkeypatch):
    change = {"topic": "realtime:public_posts", "event": "postgres_changes", "payload": {"n": 1}}
    socket = FakeSocket([[1, 2], {"event": "phx_reply", "payload": 5}, change], hold=True)

    async def fake_connect(url, **kwargs):
        return socket

    monkeypatch.setattr("cira.remote.realtime.websockets.connect", fake_connect)

    await feed.connect()
    stream = await feed.subscribe(POSTS)
    socket.gate.set()

    payload = await asyncio.wait_for(stream.__anext__(), timeout=2)

    assert payload == {"n": 1}
    assert not feed._reader_task.done()
    await feed.close()
