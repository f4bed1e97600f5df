"""In-process backends for tests and offline demos.

Deterministic: no network, no clocks. Failures can be injected per
operation so the engines' retry paths can be exercised.
"""

from __future__ import annotations

import copy
from collections import defaultdict
from typing import Any, Optional, Sequence

from ..clock import parse_timestamp
from ..errors import TransportFailure
from ..models.events import Subscription
from .base import ChangeFeed, ChangeStream, Filter, ObjectStore, RecordStore


def _sort_key(value: Any, column: str) -> Any:
    if value is None:
        return (0, "")
    if column.endswith("_at"):
        return (1, parse_timestamp(value))
    return (1, value)


class InMemoryRecordStore(RecordStore):
    """Tables of rows keyed by ``id``.

    ``fail_on`` maps an operation name (``upsert``, ``query``, ``delete``)
    to a predicate over the table name and row/filters; when it returns
    True the call raises ``TransportFailure``.
    """

    def __init__(self, identity: Optional[str] = None):
        self.identity = identity
        self.tables: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self.calls: list[tuple[str, str]] = []
        self.fail_on: dict[str, Any] = {}
        self.rpc_results: dict[str, list[dict[str, Any]]] = {}

    def _maybe_fail(self, operation: str, table: str, subject: Any) -> None:
        predicate = self.fail_on.get(operation)
        if predicate is not None and predicate(table, subject):
            raise TransportFailure(f"Injected {operation} failure on {table}", status_code=503)

    def seed(self, table: str, *rows: dict[str, Any]) -> None:
        for row in rows:
            self.tables[table][str(row["id"])] = copy.deepcopy(row)

    def upsert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("upsert", table))
        self._maybe_fail("upsert", table, record)
        row = {**self.tables[table].get(str(record["id"]), {}), **copy.deepcopy(record)}
        self.tables[table][str(record["id"])] = row
        return copy.deepcopy(row)

    def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Optional[str] = None,
        limit: Optional[int] = None,
        select: str = "*",
        offset: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        self.calls.append(("query", table))
        self._maybe_fail("query", table, filters)
        rows = [row for row in self.tables[table].values() if all(f.matches(row) for f in filters)]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda r: _sort_key(r.get(column), column), reverse=direction == "desc")
        if offset:
            rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(row) for row in rows]

    def delete(self, table: str, filters: Sequence[Filter]) -> None:
        self.calls.append(("delete", table))
        self._maybe_fail("delete", table, filters)
        doomed = [key for key, row in self.tables[table].items() if all(f.matches(row) for f in filters)]
        for key in doomed:
            del self.tables[table][key]

    def rpc(self, function: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        self.calls.append(("rpc", function))
        if function not in self.rpc_results:
            raise TransportFailure(f"Unknown function {function}", status_code=404)
        return copy.deepcopy(self.rpc_results[function])

    def current_identity(self) -> Optional[str]:
        return self.identity

    def row(self, table: str, row_id: str) -> Optional[dict[str, Any]]:
        return self.tables[table].get(row_id)


class InMemoryObjectStore(ObjectStore):
    """Buckets of bytes keyed by path; ``failing_paths`` makes uploads fail."""

    def __init__(self, base_url: str = "memory://storage"):
        self.base_url = base_url
        self.buckets: dict[str, dict[str, bytes]] = defaultdict(dict)
        self.uploads: list[tuple[str, str]] = []
        self.failing_paths: set[str] = set()

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        self.uploads.append((bucket, path))
        if path in self.failing_paths:
            raise TransportFailure(f"Injected upload failure for {bucket}/{path}", status_code=500)
        self.buckets[bucket][path] = bytes(data)
        return path

    def download(self, bucket: str, path: str) -> bytes:
        try:
            return self.buckets[bucket][path]
        except KeyError:
            raise TransportFailure(f"Object not found: {bucket}/{path}", status_code=404) from None

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/public/{bucket}/{path}"

    def delete(self, bucket: str, paths: Sequence[str]) -> None:
        for path in paths:
            self.buckets[bucket].pop(path, None)


def _filter_matches(filter_expr: Optional[str], payload: dict[str, Any]) -> bool:
    if not filter_expr:
        return True
    column, _, condition = filter_expr.partition("=")
    op, _, expected = condition.partition(".")
    if op != "eq":
        return True
    data = payload.get("data", payload)
    row = data.get("record") or data.get("old_record") or {}
    # Deletes usually only carry the primary key
    if column not in row:
        return True
    return str(row[column]).lower() == expected.lower()


class InMemoryChangeFeed(ChangeFeed):
    """Loopback change feed; tests ``publish`` payloads and force reconnects."""

    def __init__(self) -> None:
        super().__init__()
        self.connected = False
        self.connect_count = 0
        self.fail_connect = False
        self.subscribe_log: list[Subscription] = []
        self._streams: dict[str, ChangeStream] = {}

    @property
    def active_subscriptions(self) -> list[Subscription]:
        return [stream.subscription for stream in self._streams.values()]

    async def connect(self) -> None:
        if self.fail_connect:
            raise TransportFailure("Injected connect failure")
        self.connected = True
        self.connect_count += 1

    async def subscribe(self, subscription: Subscription) -> ChangeStream:
        if not self.connected:
            raise TransportFailure("Change feed not connected")
        stream = ChangeStream(subscription)
        previous = self._streams.pop(subscription.channel, None)
        if previous is not None:
            previous.end()
        self._streams[subscription.channel] = stream
        self.subscribe_log.append(subscription)
        return stream

    async def unsubscribe(self, subscription: Subscription) -> None:
        stream = self._streams.pop(subscription.channel, None)
        if stream is not None:
            stream.end()

    async def close(self) -> None:
        for stream in self._streams.values():
            stream.end()
        self._streams.clear()
        self.connected = False

    def publish(self, table: str, payload: dict[str, Any]) -> int:
        """Deliver a raw payload to every matching subscription; returns deliveries."""
        delivered = 0
        for stream in list(self._streams.values()):
            sub = stream.subscription
            if sub.table == table and _filter_matches(sub.filter, payload):
                stream.push(payload)
                delivered += 1
        return delivered

    async def simulate_reconnect(self) -> None:
        """Drop every stream, reconnect, then run reconnect callbacks."""
        for stream in self._streams.values():
            stream.end()
        self._streams.clear()
        self.connected = False
        await self.connect()
        await self._fire_reconnect()
