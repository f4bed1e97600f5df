"""Read-only social feed of posts visible to the current user."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from ..clock import utc_now
from ..errors import DecodeFailure, NetworkUnavailable, NotAuthenticated
from ..models.remote import POSTS_TABLE, FeedPost, decode_feed_post
from ..remote.base import Filter, RecordStore

logger = logging.getLogger(__name__)

FEED_SELECT = (
    "id,owner_id,image_path,live_photo_path,message,voice_url,voice_duration,"
    "visibility,created_at,updated_at,profiles!posts_owner_id_fkey(username,avatar_data)"
)
FEED_RPC = "fetch_social_feed"


class FeedReader:
    """Fetches feed posts and keeps the last result in ``cached_feed``.

    Visibility is enforced server-side; rows that decode in neither the
    nested-author nor the flattened shape are skipped.
    """

    def __init__(self, records: RecordStore, is_online: Callable[[], bool] = lambda: True):
        self.records = records
        self.is_online = is_online
        self.cached_feed: list[FeedPost] = []
        self.last_fetch_at: Optional[datetime] = None

    async def _check_ready(self) -> None:
        if not self.is_online():
            raise NetworkUnavailable("Device is offline")
        owner_id = await asyncio.to_thread(self.records.current_identity)
        if not owner_id:
            raise NotAuthenticated("No signed-in user; feed is unavailable")

    def _decode_rows(self, rows: list[Any]) -> list[FeedPost]:
        posts: list[FeedPost] = []
        for raw in rows:
            try:
                posts.append(decode_feed_post(raw))
            except DecodeFailure as e:
                logger.warning(f"Skipping malformed feed row: {e}")
        return posts

    async def fetch_feed(self, limit: int = 50) -> list[FeedPost]:
        """Newest active posts with their author joined in."""
        await self._check_ready()
        rows = await asyncio.to_thread(
            self.records.query,
            POSTS_TABLE,
            [Filter("is_active", "eq", True)],
            "created_at.desc",
            limit,
            FEED_SELECT,
        )
        self.cached_feed = self._decode_rows(rows)
        self.last_fetch_at = utc_now()
        return self.cached_feed

    async def fetch_social_feed(self, limit: int = 50, offset: int = 0) -> list[FeedPost]:
        """Page through the server-side feed function (flattened author columns)."""
        await self._check_ready()
        rows = await asyncio.to_thread(self.records.rpc, FEED_RPC, {"p_limit": limit, "p_offset": offset})
        posts = self._decode_rows(rows)
        if offset == 0:
            self.cached_feed = posts
        else:
            self.cached_feed.extend(posts)
        self.last_fetch_at = utc_now()
        return posts
