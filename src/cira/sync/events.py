"""Typed in-process event bus for sync notifications."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Optional

from pydantic import BaseModel, Field

from ..clock import utc_now

logger = logging.getLogger(__name__)


class SyncEventKind(str, Enum):
    ENTITY_SYNCED = "entity_synced"
    ENTITY_SYNC_FAILED = "entity_sync_failed"
    DRAIN_FINISHED = "drain_finished"
    PULL_FINISHED = "pull_finished"
    REMOTE_APPLIED = "remote_applied"
    REMOTE_DELETED = "remote_deleted"
    FEED_POST_CHANGED = "feed_post_changed"
    CONNECTIVITY_CHANGED = "connectivity_changed"
    LISTENER_STATE_CHANGED = "listener_state_changed"


class SyncEvent(BaseModel):
    """One notification published by an engine."""

    kind: SyncEventKind
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    detail: dict[str, Any] = Field(default_factory=dict)
    at: datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True}


class EventBus:
    """Fan-out of ``SyncEvent`` to per-subscriber asyncio queues.

    Publishing never blocks: a subscriber whose queue is full loses the
    event (logged at debug level).
    """

    def __init__(self, max_queue: int = 1000):
        self.max_queue = max_queue
        self._queues: list[asyncio.Queue[SyncEvent]] = []

    def subscribe(self) -> asyncio.Queue[SyncEvent]:
        queue: asyncio.Queue[SyncEvent] = asyncio.Queue(maxsize=self.max_queue)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[SyncEvent]) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def publish(self, kind: SyncEventKind, **fields: Any) -> SyncEvent:
        event = SyncEvent(kind=kind, **fields)
        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(f"Dropped {event.kind.value} for a slow subscriber")
        return event

    @asynccontextmanager
    async def listen(self) -> AsyncIterator[asyncio.Queue[SyncEvent]]:
        """Context manager yielding a queue that is unsubscribed on exit."""
        queue = self.subscribe()
        try:
            yield queue
        finally:
            self.unsubscribe(queue)
