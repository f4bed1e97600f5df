"""Pull engine: fetch remote deltas since the last checkpoint and merge them."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from ..clock import format_timestamp, parse_timestamp, utc_now
from ..config import SyncTuning
from ..errors import CiraSyncError, DecodeFailure, NetworkUnavailable, NotAuthenticated
from ..ledger import LedgerWriter
from ..models.remote import TABLE_FOR_ENTITY, decode_record
from ..models.reports import PullReport
from ..paths import DataPaths
from ..remote.base import Filter, RecordStore
from ..store.db import LocalStore
from ..trace import write_pull_trace
from .events import EventBus, SyncEventKind
from .merge import RemoteMerger

logger = logging.getLogger(__name__)


def _raw_timestamp(raw: Any) -> Optional[datetime]:
    """Best-effort ``updated_at`` of an undecodable row."""
    if not isinstance(raw, dict):
        return None
    value = raw.get("updated_at") or raw.get("created_at")
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError):
        return None


def next_checkpoint(stamps: list[tuple[Optional[datetime], bool]]) -> Optional[datetime]:
    """Checkpoint candidate after a batch.

    ``stamps`` holds ``(updated_at, ok)`` per record in ascending order.
    The result is the newest timestamp strictly older than the earliest
    failed record, so that record is fetched again on the next pull.
    """
    bound: Optional[datetime] = None
    limit = len(stamps)
    for index, (stamp, ok) in enumerate(stamps):
        if not ok:
            limit = index
            bound = stamp
            break

    candidates = [
        stamp
        for stamp, _ in stamps[:limit]
        if stamp is not None and (bound is None or stamp < bound)
    ]
    return max(candidates) if candidates else None


class PullEngine:
    """Reconciles one entity type at a time against the record store."""

    def __init__(
        self,
        store: LocalStore,
        records: RecordStore,
        merger: RemoteMerger,
        *,
        tuning: Optional[SyncTuning] = None,
        is_online: Callable[[], bool] = lambda: True,
        bus: Optional[EventBus] = None,
        ledger: Optional[LedgerWriter] = None,
        paths: Optional[DataPaths] = None,
    ):
        self.store = store
        self.records = records
        self.merger = merger
        self.tuning = tuning or SyncTuning()
        self.is_online = is_online
        self.bus = bus or merger.bus
        self.ledger = ledger
        self.paths = paths

    async def pull(self, entity_type: str) -> PullReport:
        """Fetch and merge every remote ``entity_type`` record newer than the checkpoint.

        Args:
            entity_type: ``captures`` or ``collections``

        Raises:
            ValueError: For an unknown entity type
            NetworkUnavailable: If the reachability check says offline
            NotAuthenticated: If there is no current identity
            TransportFailure: If the first page cannot be fetched
        """
        if entity_type not in TABLE_FOR_ENTITY:
            raise ValueError(f"Unknown entity type: {entity_type}")
        if not self.is_online():
            raise NetworkUnavailable("Device is offline")
        owner_id = await asyncio.to_thread(self.records.current_identity)
        if not owner_id:
            raise NotAuthenticated("No signed-in user; pull is blocked")

        table = TABLE_FOR_ENTITY[entity_type]
        checkpoint = self.store.get_checkpoint(entity_type)
        report = PullReport(entity_type=entity_type, checkpoint_before=checkpoint)

        filters = [Filter("owner_id", "eq", owner_id)]
        if checkpoint is not None:
            filters.append(Filter("updated_at", "gt", format_timestamp(checkpoint)))

        stamps: list[tuple[Optional[datetime], bool]] = []
        page_size = self.tuning.pull_page_size
        offset = 0
        while True:
            try:
                rows = await asyncio.to_thread(
                    self.records.query, table, filters, "updated_at.asc", page_size, "*", offset
                )
            except CiraSyncError as e:
                if offset == 0:
                    raise
                logger.warning(f"Pull of {entity_type} stopped at offset {offset}: {e}")
                report.errors.append(str(e))
                break

            for raw in rows:
                stamps.append(await self._merge_row(entity_type, raw, report))

            if len(rows) < page_size:
                break
            offset += len(rows)

        candidate = next_checkpoint(stamps)
        if candidate is not None:
            report.checkpoint_after = self.store.advance_checkpoint(entity_type, candidate)
        else:
            report.checkpoint_after = checkpoint

        self._record_pull(report)
        return report

    async def _merge_row(self, entity_type: str, raw: Any, report: PullReport) -> tuple[Optional[datetime], bool]:
        report.fetched += 1
        try:
            record = decode_record(entity_type, raw)
        except DecodeFailure as e:
            logger.warning(f"Skipping undecodable {entity_type} row: {e}")
            report.failed += 1
            report.errors.append(str(e))
            return _raw_timestamp(raw), False

        stamp = record.effective_updated_at
        try:
            result = await self.merger.apply(entity_type, record, source="pull")
        except (CiraSyncError, OSError) as e:
            logger.warning(f"Failed to apply remote {entity_type} {record.id}: {e}")
            report.failed += 1
            report.errors.append(f"{record.id}: {e}")
            return stamp, False

        if result == "created":
            report.created += 1
        elif result == "updated":
            report.updated += 1
        elif result == "unchanged":
            report.unchanged += 1
        else:
            report.skipped += 1
        return stamp, True

    def _record_pull(self, report: PullReport) -> None:
        logger.info(
            f"Pulled {report.entity_type}: {report.fetched} fetched, {report.applied} applied, "
            f"{report.skipped} skipped, {report.failed} failed"
        )
        self.bus.publish(
            SyncEventKind.PULL_FINISHED,
            entity_type=report.entity_type,
            detail={"applied": report.applied, "failed": report.failed},
        )
        if self.ledger is not None:
            self.ledger.append_event(
                "PULL_COMPLETED",
                {
                    "entity_type": report.entity_type,
                    "fetched": report.fetched,
                    "created": report.created,
                    "updated": report.updated,
                    "skipped": report.skipped,
                    "failed": report.failed,
                    "checkpoint": report.checkpoint_after.isoformat() if report.checkpoint_after else None,
                },
            )
        if self.paths is not None and report.fetched:
            run_id = self.ledger.run_id if self.ledger is not None else "local"
            write_pull_trace(report, run_id, self.paths, utc_now())
