"""Change feed over the hosted realtime service (Phoenix channels on a websocket).

Each subscription joins one ``realtime:<channel>`` topic configured for
``postgres_changes`` on a single table. A background reader routes
incoming change messages to the matching stream. When the socket drops
the feed reconnects with a fixed delay, ends every stream and runs the
reconnect callbacks so subscribers can re-join.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..config import BackendConfig, SyncTuning
from ..errors import TransportFailure
from ..models.events import Subscription
from .base import ChangeFeed, ChangeStream

logger = logging.getLogger(__name__)

PHOENIX_TOPIC = "phoenix"


def join_message(subscription: Subscription, ref: str, access_token: str) -> dict[str, Any]:
    """Build the ``phx_join`` frame for one subscription."""
    change: dict[str, Any] = {
        "event": "*",
        "schema": subscription.schema_name,
        "table": subscription.table,
    }
    if subscription.filter:
        change["filter"] = subscription.filter
    payload: dict[str, Any] = {
        "config": {
            "broadcast": {"ack": False, "self": False},
            "presence": {"key": ""},
            "postgres_changes": [change],
        },
    }
    if access_token:
        payload["access_token"] = access_token
    return {
        "topic": f"realtime:{subscription.channel}",
        "event": "phx_join",
        "payload": payload,
        "ref": ref,
        "join_ref": ref,
    }


class RealtimeChangeFeed(ChangeFeed):
    """``ChangeFeed`` speaking the Phoenix channel protocol via ``websockets``."""

    def __init__(self, backend: BackendConfig, tuning: Optional[SyncTuning] = None):
        super().__init__()
        tuning = tuning or SyncTuning()
        self.url = backend.resolved_realtime_url()
        self.api_key = backend.api_key
        self.access_token = backend.access_token or backend.api_key
        self.heartbeat_seconds = tuning.heartbeat_seconds
        self.reconnect_delay_seconds = tuning.reconnect_delay_seconds

        self._websocket: Optional[Any] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._streams: dict[str, ChangeStream] = {}
        self._refs = itertools.count(1)
        self._closing = False

    def _connect_url(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}apikey={self.api_key}&vsn=1.0.0"

    async def connect(self) -> None:
        self._closing = False
        try:
            self._websocket = await websockets.connect(self._connect_url(), ping_interval=None)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            raise TransportFailure(f"Realtime connect failed: {e}") from e

        logger.info(f"Realtime connected: {self.url}")
        self._reader_task = asyncio.create_task(self._reader_loop())
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _send(self, message: dict[str, Any]) -> None:
        if self._websocket is None:
            raise TransportFailure("Realtime socket not connected")
        try:
            await self._websocket.send(json.dumps(message))
        except (ConnectionClosed, OSError) as e:
            raise TransportFailure(f"Realtime send failed: {e}") from e

    async def subscribe(self, subscription: Subscription) -> ChangeStream:
        topic = f"realtime:{subscription.channel}"
        previous = self._streams.pop(topic, None)
        if previous is not None:
            previous.end()

        stream = ChangeStream(subscription)
        self._streams[topic] = stream
        await self._send(join_message(subscription, str(next(self._refs)), self.access_token))
        logger.info(f"Joined {topic} ({subscription.table})")
        return stream

    async def unsubscribe(self, subscription: Subscription) -> None:
        topic = f"realtime:{subscription.channel}"
        stream = self._streams.pop(topic, None)
        if stream is None:
            return
        stream.end()
        if self._websocket is not None:
            try:
                await self._send({"topic": topic, "event": "phx_leave", "payload": {}, "ref": str(next(self._refs))})
            except TransportFailure as e:
                logger.debug(f"Leave for {topic} not delivered: {e}")

    async def close(self) -> None:
        self._closing = True
        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._reader_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._heartbeat_task = None
        self._reader_task = None
        self._end_streams()
        if self._websocket is not None:
            try:
                await self._websocket.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"Realtime close: {e}")
            self._websocket = None

    def _end_streams(self) -> None:
        for stream in self._streams.values():
            stream.end()
        self._streams.clear()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            try:
                await self._send(
                    {"topic": PHOENIX_TOPIC, "event": "heartbeat", "payload": {}, "ref": str(next(self._refs))}
                )
            except TransportFailure as e:
                logger.debug(f"Heartbeat failed: {e}")
                return

    async def _reader_loop(self) -> None:
        websocket = self._websocket
        try:
            async for raw in websocket:
                try:
                    self._dispatch(raw)
                except Exception as e:
                    logger.exception(f"Dropping realtime frame that failed to dispatch: {e}")
        except ConnectionClosed as e:
            logger.warning(f"Realtime connection closed: {e}")
        if not self._closing:
            await self._reconnect()

    def _dispatch(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Dropping non-JSON realtime frame")
            return
        if not isinstance(message, dict):
            logger.warning(f"Dropping realtime frame that is not an object: {type(message).__name__}")
            return

        event = message.get("event")
        topic = message.get("topic") or ""
        payload = message.get("payload")
        if event == "postgres_changes":
            stream = self._streams.get(topic)
            if stream is not None:
                stream.push(payload)
            return
        if event == "phx_reply":
            status = payload.get("status") if isinstance(payload, dict) else None
            if status not in (None, "ok"):
                logger.warning(f"Realtime {topic} replied {status}: {payload}")
            return
        if event in ("phx_error", "phx_close", "system"):
            logger.info(f"Realtime {event} on {topic}")

    async def _reconnect(self) -> None:
        """Reconnect until it succeeds or the feed is closed."""
        self._end_streams()
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
        self._websocket = None

        while not self._closing:
            await asyncio.sleep(self.reconnect_delay_seconds)
            try:
                await self.connect()
            except TransportFailure as e:
                logger.warning(f"Realtime reconnect failed, retrying: {e}")
                continue
            await self._fire_reconnect()
            return
