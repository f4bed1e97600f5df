"""Pydantic models for ledger events."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

LedgerEventType = Literal[
    "CAPTURE_CREATED",
    "CAPTURE_EDITED",
    "CAPTURE_DELETED",
    "COLLECTION_CREATED",
    "COLLECTION_EDITED",
    "COLLECTION_DELETED",
    "RETRY_REQUESTED",
    # Outbox
    "DRAIN_COMPLETED",
    "ITEM_SYNCED",
    "ITEM_SYNC_FAILED",
    "REMOTE_DELETE_SENT",
    # Pull / live feed
    "PULL_COMPLETED",
    "REMOTE_APPLIED",
    "REMOTE_DELETED",
    "UPLOAD_REPAIRED",
]


class LedgerEvent(BaseModel):
    """Append-only sync ledger record.

    Written as JSONL to <data_root>/ledger.jsonl.
    Never mutate or delete; only append.
    """

    event_id: str = Field(description="Unique event identifier (uuid4)")
    run_id: str = Field(description="Process run identifier (uuid4)")
    ts: datetime = Field(description="Event timestamp (ISO8601 UTC)")
    event_type: LedgerEventType = Field(description="Event type")
    entity_id: str | None = Field(default=None, description="Related capture or collection ID")
    payload: dict = Field(default_factory=dict, description="Event-specific data")

    model_config = {"frozen": True}
