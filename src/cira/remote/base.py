"""Abstract interfaces for the hosted record, object and change-feed services.

The sync engines depend only on these interfaces. ``RecordStore`` and
``ObjectStore`` are blocking (called through ``asyncio.to_thread``);
``ChangeFeed`` lives on the event loop.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Optional, Sequence

from ..clock import parse_timestamp
from ..models.events import Subscription

FilterOp = Literal["eq", "gt", "gte", "lt"]
ReconnectCallback = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class Filter:
    """One ``column <op> value`` condition on a record query."""

    column: str
    op: FilterOp
    value: Any

    def to_param(self) -> tuple[str, str]:
        """PostgREST query-string form, e.g. ``("owner_id", "eq.<id>")``."""
        value = self.value
        if isinstance(value, bool):
            value = "true" if value else "false"
        return self.column, f"{self.op}.{value}"

    def matches(self, row: dict[str, Any]) -> bool:
        actual = row.get(self.column)
        expected = self.value
        if self.op == "eq":
            return actual == expected
        if actual is None:
            return False
        if self.column.endswith("_at"):
            actual, expected = parse_timestamp(actual), parse_timestamp(expected)
        if self.op == "gt":
            return actual > expected
        if self.op == "gte":
            return actual >= expected
        return actual < expected


class RecordStore(ABC):
    """Row store with upsert, filtered query and delete."""

    @abstractmethod
    def upsert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert or replace a row by ``id``; returns the stored row.

        Raises:
            TransportFailure: On network errors or non-success responses
        """

    @abstractmethod
    def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Optional[str] = None,
        limit: Optional[int] = None,
        select: str = "*",
        offset: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Return rows matching every filter.

        ``order`` is ``"<column>.asc"`` or ``"<column>.desc"``.
        """

    @abstractmethod
    def delete(self, table: str, filters: Sequence[Filter]) -> None:
        """Delete rows matching every filter; deleting nothing is not an error."""

    @abstractmethod
    def rpc(self, function: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Call a server-side function returning rows."""

    @abstractmethod
    def current_identity(self) -> Optional[str]:
        """Return the signed-in user ID, or None when not authenticated."""


class ObjectStore(ABC):
    """Bucketed blob storage addressed by path."""

    @abstractmethod
    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        """Upload (upsert) ``data`` at ``path``; returns the stored path."""

    @abstractmethod
    def download(self, bucket: str, path: str) -> bytes:
        """Return the bytes stored at ``path``."""

    @abstractmethod
    def public_url(self, bucket: str, path: str) -> str:
        """Return a public URL for ``path``."""

    @abstractmethod
    def delete(self, bucket: str, paths: Sequence[str]) -> None:
        """Remove objects; missing paths are ignored."""


_END = object()


class ChangeStream:
    """Async iterator over raw change payloads for one subscription.

    Iteration ends when the stream is closed by ``unsubscribe``, by
    ``close`` or by a transport reconnect.
    """

    def __init__(self, subscription: Subscription):
        self.subscription = subscription
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self.closed = False

    def push(self, payload: Any) -> None:
        if not self.closed:
            self._queue.put_nowait(payload)

    def end(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_END)

    def __aiter__(self) -> "ChangeStream":
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        return item


class ChangeFeed(ABC):
    """Live insert/update/delete notifications per table."""

    def __init__(self) -> None:
        self._reconnect_callbacks: list[ReconnectCallback] = []

    def add_reconnect_callback(self, callback: ReconnectCallback) -> None:
        """Register a coroutine function run after every transport reconnect.

        All streams are ended before callbacks run; subscribers re-subscribe
        from the callback.
        """
        self._reconnect_callbacks.append(callback)

    def remove_reconnect_callback(self, callback: ReconnectCallback) -> None:
        if callback in self._reconnect_callbacks:
            self._reconnect_callbacks.remove(callback)

    async def _fire_reconnect(self) -> None:
        for callback in list(self._reconnect_callbacks):
            await callback()

    @abstractmethod
    async def connect(self) -> None:
        """Open the transport.

        Raises:
            TransportFailure: If the connection cannot be established
        """

    @abstractmethod
    async def subscribe(self, subscription: Subscription) -> ChangeStream:
        """Register a subscription and return its payload stream."""

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription) -> None:
        """Drop a subscription and end its stream; unknown ones are ignored."""

    @abstractmethod
    async def close(self) -> None:
        """Close the transport and end every stream; safe to call twice."""
