"""Pydantic models for Cira sync."""

from .entities import CapturedItem, Collection, SyncState, Visibility, VoiceClip
from .events import ChangeEvent, ChangeType, Subscription
from .ledger import LedgerEvent, LedgerEventType
from .remote import (
    CHAPTERS_TABLE,
    POSTS_TABLE,
    ChapterRecord,
    EntityType,
    FeedAuthor,
    FeedPost,
    PostRecord,
    RemoteRecord,
    decode_feed_post,
    decode_record,
)
from .reports import EntityOutcome, FullSyncResult, PullReport, SyncReport

__all__ = [
    # Local entities
    "CapturedItem",
    "Collection",
    "SyncState",
    "Visibility",
    "VoiceClip",
    # Wire
    "CHAPTERS_TABLE",
    "POSTS_TABLE",
    "ChapterRecord",
    "EntityType",
    "FeedAuthor",
    "FeedPost",
    "PostRecord",
    "RemoteRecord",
    "decode_feed_post",
    "decode_record",
    # Change feed
    "ChangeEvent",
    "ChangeType",
    "Subscription",
    # Results
    "EntityOutcome",
    "FullSyncResult",
    "PullReport",
    "SyncReport",
    "LedgerEvent",
    "LedgerEventType",
]
