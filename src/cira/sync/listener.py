"""Live change listener: apply single-record deltas from the change feed."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Optional

from ..errors import CiraSyncError, DecodeFailure, NotAuthenticated, TransportFailure
from ..models.events import ChangeEvent, ChangeType, Subscription
from ..models.remote import CHAPTERS_TABLE, ENTITY_FOR_TABLE, POSTS_TABLE, decode_record
from ..remote.base import ChangeFeed, ChangeStream, RecordStore
from .events import EventBus, SyncEventKind
from .merge import RemoteMerger

logger = logging.getLogger(__name__)


class ListenerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"


def owner_subscriptions(owner_id: str) -> list[Subscription]:
    """Own chapters (filtered by owner) and every post visible to this user."""
    return [
        Subscription(
            channel=f"chapters_{owner_id}",
            table=CHAPTERS_TABLE,
            filter=f"owner_id=eq.{owner_id}",
        ),
        Subscription(channel="public_posts", table=POSTS_TABLE),
    ]


class LiveChangeListener:
    """Keeps the local cache current with remote inserts, updates and deletes.

    Posts owned by other users are not stored; they are announced on the
    bus as feed events. A bad payload only drops that one event.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        records: RecordStore,
        merger: RemoteMerger,
        *,
        bus: Optional[EventBus] = None,
    ):
        self.feed = feed
        self.records = records
        self.merger = merger
        self.bus = bus or merger.bus
        self.state = ListenerState.DISCONNECTED
        self.owner_id: Optional[str] = None
        self.subscriptions: list[Subscription] = []
        self._tasks: dict[str, asyncio.Task] = {}

    def _set_state(self, state: ListenerState) -> None:
        if state is self.state:
            return
        self.state = state
        logger.info(f"Listener {state.value}")
        self.bus.publish(SyncEventKind.LISTENER_STATE_CHANGED, detail={"state": state.value})

    async def start_listening(self) -> None:
        """Connect and subscribe; a second call while running is a no-op.

        Raises:
            NotAuthenticated: If there is no current identity
            TransportFailure: If the feed cannot connect or subscribe
        """
        if self.state is not ListenerState.DISCONNECTED:
            return

        owner_id = await asyncio.to_thread(self.records.current_identity)
        if not owner_id:
            raise NotAuthenticated("No signed-in user; live updates are blocked")
        self.owner_id = owner_id

        self._set_state(ListenerState.CONNECTING)
        try:
            await self.feed.connect()
            self.feed.add_reconnect_callback(self._on_reconnect)
            self.subscriptions = owner_subscriptions(owner_id)
            await self._subscribe_all()
        except TransportFailure:
            self.feed.remove_reconnect_callback(self._on_reconnect)
            await self._cancel_tasks()
            self._set_state(ListenerState.DISCONNECTED)
            raise
        self._set_state(ListenerState.SUBSCRIBED)

    async def stop_listening(self) -> None:
        """Cancel receive tasks, unsubscribe and close the feed. Idempotent."""
        if self.state is ListenerState.DISCONNECTED and not self._tasks:
            return
        self._set_state(ListenerState.DISCONNECTED)
        self.feed.remove_reconnect_callback(self._on_reconnect)
        await self._cancel_tasks()

        for subscription in self.subscriptions:
            try:
                await self.feed.unsubscribe(subscription)
            except TransportFailure as e:
                logger.debug(f"Unsubscribe {subscription.channel}: {e}")
        await self.feed.close()

    async def _cancel_tasks(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _subscribe_all(self) -> None:
        for subscription in self.subscriptions:
            stream = await self.feed.subscribe(subscription)
            self._tasks[subscription.channel] = asyncio.create_task(self._consume(stream))

    async def _on_reconnect(self) -> None:
        if self.state is ListenerState.DISCONNECTED:
            return
        logger.info("Change feed reconnected; re-registering subscriptions")
        self._set_state(ListenerState.CONNECTING)
        try:
            await self._subscribe_all()
        except TransportFailure as e:
            logger.warning(f"Re-subscribe failed: {e}")
            return
        self._set_state(ListenerState.SUBSCRIBED)

    async def _consume(self, stream: ChangeStream) -> None:
        async for payload in stream:
            try:
                await self.handle_payload(payload)
            except DecodeFailure as e:
                logger.warning(f"Dropping undecodable change on {stream.subscription.channel}: {e}")
            except (CiraSyncError, OSError) as e:
                logger.warning(f"Failed to apply change on {stream.subscription.channel}: {e}")

    async def handle_payload(self, payload: Any) -> str:
        """Apply one raw change payload.

        Returns:
            What happened: ``created``, ``updated``, ``unchanged``,
            ``skipped``, ``deleted``, ``missing``, ``feed`` or ``ignored``

        Raises:
            DecodeFailure: If the payload or its record cannot be decoded
        """
        event = ChangeEvent.from_payload(payload)
        entity_type = ENTITY_FOR_TABLE.get(event.table)
        if entity_type is None:
            logger.debug(f"Ignoring change on unknown table {event.table}")
            return "ignored"

        if event.type is ChangeType.DELETE:
            removed = self.merger.apply_delete(entity_type, event.deleted_id, source="live")
            if entity_type == "captures" and not removed:
                self._announce_feed(event, event.deleted_id, None)
                return "feed"
            return "deleted" if removed else "missing"

        record = decode_record(entity_type, event.record)
        if entity_type == "captures" and record.owner_id != self.owner_id:
            self._announce_feed(event, record.id, record.owner_id)
            return "feed"

        return await self.merger.apply(entity_type, record, source="live")

    def _announce_feed(self, event: ChangeEvent, post_id: Optional[str], owner_id: Optional[str]) -> None:
        self.bus.publish(
            SyncEventKind.FEED_POST_CHANGED,
            entity_type="captures",
            entity_id=post_id,
            detail={"type": event.type.value, "owner_id": owner_id},
        )
