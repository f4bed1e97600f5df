"""Repair of uploads interrupted between the record upsert and the photo upload.

Older clients wrote the record first; a crash in between left a remote
row with no ``image_path`` while the local item was already ``synced``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..clock import utc_now
from ..errors import NotAuthenticated
from ..ledger import LedgerWriter
from ..models.entities import SyncState
from ..models.remote import POSTS_TABLE
from ..remote.base import Filter, RecordStore
from ..store.blobs import BlobCache
from ..store.db import LocalStore

logger = logging.getLogger(__name__)


async def repair_incomplete_uploads(
    store: LocalStore,
    blobs: BlobCache,
    records: RecordStore,
    ledger: Optional[LedgerWriter] = None,
) -> dict[str, SyncState]:
    """Re-queue synced items whose remote record has no image path.

    Items whose local image still exists go back to ``pending``; the rest
    become ``failed``.

    Returns:
        Mapping of repaired item ID to its new state

    Raises:
        NotAuthenticated: If there is no current identity
        TransportFailure: If the remote records cannot be listed
    """
    owner_id = await asyncio.to_thread(records.current_identity)
    if not owner_id:
        raise NotAuthenticated("No signed-in user; cannot repair uploads")

    rows = await asyncio.to_thread(
        records.query, POSTS_TABLE, [Filter("owner_id", "eq", owner_id)], None, None, "id,image_path"
    )
    incomplete = {str(row.get("id", "")).lower() for row in rows if not row.get("image_path")}
    if not incomplete:
        return {}

    repaired: dict[str, SyncState] = {}
    for item_id in store.iter_synced_item_ids():
        if item_id not in incomplete:
            continue
        item = store.get_item(item_id)
        if item is None:
            continue

        if blobs.exists("images", item.image_file):
            store.mark_pending("captures", item_id, "remote record missing image")
            repaired[item_id] = SyncState.PENDING
        else:
            store.mark_failed("captures", item_id, "image payload lost locally", utc_now())
            repaired[item_id] = SyncState.FAILED

        logger.warning(f"Repaired incomplete upload {item_id} -> {repaired[item_id].value}")
        if ledger is not None:
            ledger.append_event("UPLOAD_REPAIRED", {"state": repaired[item_id].value}, entity_id=item_id)

    return repaired
