"""Pydantic models for locally owned journal entities."""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

Visibility = Literal["private", "friends", "family", "public"]


class SyncState(str, Enum):
    """Upload state of a locally created entity.

    Stored as its string tag. ``syncing`` never survives a reload.
    """

    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"

    @property
    def needs_sync(self) -> bool:
        return self in (SyncState.PENDING, SyncState.FAILED)


class VoiceClip(BaseModel):
    """Voice note attached to exactly one captured item."""

    id: str = Field(description="Unique voice clip identifier (uuid4)")
    item_id: str = Field(description="Owning captured item")
    audio_file: str = Field(description="Blob name under blobs/voice")
    duration: float = Field(ge=0, description="Length in seconds")
    waveform: list[float] | None = Field(default=None, description="Optional precomputed levels in [0, 1]")
    created_at: datetime

    @property
    def formatted_duration(self) -> str:
        minutes = int(self.duration) // 60
        seconds = int(self.duration) % 60
        return f"{minutes}:{seconds:02d}"


class CapturedItem(BaseModel):
    """A photo capture with optional voice note, video pairing and album."""

    id: str = Field(description="Stable capture identifier (uuid4)")
    owner_id: str | None = Field(default=None, description="Owner identity, known after first sync or pull")
    image_file: str | None = Field(default=None, description="Blob name of the primary image")
    thumbnail_file: str | None = Field(default=None, description="Blob name of the derived thumbnail")
    video_file: str | None = Field(default=None, description="Blob name of the paired live-photo movie")
    voice: VoiceClip | None = None
    collection_id: str | None = Field(default=None, description="Parent collection, if any")
    caption: str | None = None
    visibility: Visibility = "private"
    created_at: datetime
    updated_at: datetime
    sync_state: SyncState = SyncState.PENDING
    local_revision: int = Field(default=0, description="Bumped on every local edit")
    sync_attempts: int = 0
    next_attempt_at: datetime | None = None
    last_error: str | None = None

    model_config = {"frozen": False}

    @property
    def has_voice(self) -> bool:
        return self.voice is not None

    @property
    def has_video(self) -> bool:
        return self.video_file is not None


class Collection(BaseModel):
    """An album (chapter) grouping captured items.

    ``updated_at`` is the conflict-resolution signal and only moves forward.
    """

    id: str = Field(description="Stable collection identifier (uuid4)")
    owner_id: str | None = None
    name: str
    description: str | None = None
    cover_file: str | None = Field(default=None, description="Blob name of the cached cover image")
    created_at: datetime
    updated_at: datetime
    sync_state: SyncState = SyncState.PENDING
    local_revision: int = 0
    sync_attempts: int = 0
    next_attempt_at: datetime | None = None
    last_error: str | None = None

    model_config = {"frozen": False}
