"""Sync service: wires the local store, remote backends and engines together."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from ..clock import utc_now
from ..config import CiraConfig
from ..errors import NotAuthenticated, TransportFailure
from ..ledger import LedgerWriter
from ..models.reports import FullSyncResult
from ..paths import DataPaths
from ..remote.base import ChangeFeed, ObjectStore, RecordStore
from ..remote.realtime import RealtimeChangeFeed
from ..remote.rest import RestObjectStore, RestRecordStore, create_session
from ..store.blobs import BlobCache
from ..store.db import LocalStore
from .connectivity import ConnectivityMonitor, http_probe
from .events import EventBus
from .feed import FeedReader
from .listener import ListenerState, LiveChangeListener
from .merge import RemoteMerger
from .outbox import OutboxSyncEngine
from .pull import PullEngine
from .repair import repair_incomplete_uploads

logger = logging.getLogger(__name__)


class SyncService:
    """Owns one instance of every engine; no module-level singletons.

    Lifecycle: ``configure()`` builds the object graph, ``start()`` begins
    reachability probing and live listening, ``stop()`` tears both down.
    Remote backends default to the HTTP/realtime implementations and can
    be injected for tests.
    """

    def __init__(
        self,
        config: CiraConfig,
        *,
        records: Optional[RecordStore] = None,
        objects: Optional[ObjectStore] = None,
        feed: Optional[ChangeFeed] = None,
        probe: Optional[Callable[[], bool]] = None,
        assume_online: bool = False,
    ):
        self.config = config
        self._records = records
        self._objects = objects
        self._feed = feed
        self._probe = probe
        self._assume_online = assume_online

        self.configured = False
        self.last_sync_at: Optional[datetime] = None
        self._syncing = False
        self._probe_task: Optional[asyncio.Task] = None

    def configure(self) -> "SyncService":
        """Open the local store and build engines. Safe to call once per instance."""
        if self.configured:
            return self

        config = self.config
        self.paths = DataPaths.from_config(config).ensure()
        self.store = LocalStore(self.paths.db_file)
        self.blobs = BlobCache(self.paths)
        self.ledger = LedgerWriter(self.paths.ledger_file)
        self.bus = EventBus()

        if self._records is None or self._objects is None:
            session = create_session(config.backend)
            if self._records is None:
                self._records = RestRecordStore(config.backend, session=session)
            if self._objects is None:
                self._objects = RestObjectStore(config.backend, session=session)
        if self._feed is None:
            self._feed = RealtimeChangeFeed(config.backend, config.sync)
        if self._probe is None and config.backend.api_url:
            self._probe = http_probe(
                f"{config.backend.api_url.rstrip('/')}/auth/v1/health",
                timeout=min(config.backend.http_timeout_seconds, 10.0),
            )

        self.records: RecordStore = self._records
        self.objects: ObjectStore = self._objects
        self.feed: ChangeFeed = self._feed

        self.outbox = OutboxSyncEngine(
            self.store,
            self.blobs,
            self.records,
            self.objects,
            backend=config.backend,
            tuning=config.sync,
            is_online=lambda: self.monitor.is_online,
            bus=self.bus,
            ledger=self.ledger,
            paths=self.paths,
        )
        self.monitor = ConnectivityMonitor(
            self.outbox.drain_pending, bus=self.bus, initial_online=self._assume_online
        )
        self.merger = RemoteMerger(
            self.store, self.blobs, self.objects, backend=config.backend, bus=self.bus, ledger=self.ledger
        )
        self.pull_engine = PullEngine(
            self.store,
            self.records,
            self.merger,
            tuning=config.sync,
            is_online=lambda: self.monitor.is_online,
            bus=self.bus,
            ledger=self.ledger,
            paths=self.paths,
        )
        self.listener = LiveChangeListener(self.feed, self.records, self.merger, bus=self.bus)
        self.feed_reader = FeedReader(self.records, is_online=lambda: self.monitor.is_online)

        self.configured = True
        logger.debug(f"Sync service configured at {self.paths.root}")
        return self

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.configure()
        if self._probe is not None and self._probe_task is None:
            self._probe_task = asyncio.create_task(
                self.monitor.run_probe(self._probe, self.config.sync.probe_interval_seconds)
            )
        if self.config.sync.listen_on_start:
            try:
                await self.listener.start_listening()
            except (NotAuthenticated, TransportFailure) as e:
                logger.warning(f"Live updates unavailable: {e}")

    async def stop(self) -> None:
        if not self.configured:
            return
        await self.listener.stop_listening()
        if self._probe_task is not None:
            self._probe_task.cancel()
            try:
                await self._probe_task
            except asyncio.CancelledError:
                pass
            self._probe_task = None
        await self.monitor.cancel_pending()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def sync_now(self, force: bool = False) -> FullSyncResult:
        """Repair interrupted uploads, drain the outbox, then pull collections and captures.

        Skipped when offline or when another full sync is running.

        Raises:
            NotAuthenticated: If there is no current identity
        """
        self.configure()
        result = FullSyncResult(started_at=utc_now())
        if self._syncing:
            result.skipped, result.reason = True, "sync already in progress"
            return result
        if not self.monitor.is_online:
            result.skipped, result.reason = True, "offline"
            return result

        self._syncing = True
        try:
            try:
                repaired = await repair_incomplete_uploads(self.store, self.blobs, self.records, self.ledger)
                result.repaired = {item_id: state.value for item_id, state in repaired.items()}
            except TransportFailure as e:
                logger.warning(f"Upload repair skipped: {e}")

            try:
                result.drain = await self.outbox.drain_pending(force=force)
            except TransportFailure as e:
                logger.warning(f"Drain failed: {e}")

            for entity_type in ("collections", "captures"):
                try:
                    result.pulls.append(await self.pull_engine.pull(entity_type))
                except TransportFailure as e:
                    logger.warning(f"Pull of {entity_type} failed: {e}")
        finally:
            self._syncing = False

        result.finished_at = utc_now()
        self.last_sync_at = result.finished_at
        return result

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def pending_count(self) -> int:
        self.configure()
        return self.store.pending_count()

    @property
    def is_online(self) -> bool:
        return self.configured and self.monitor.is_online

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def listener_state(self) -> ListenerState:
        if not self.configured:
            return ListenerState.DISCONNECTED
        return self.listener.state

