"""Wire models for records exchanged with the hosted record store.

Records carry storage paths instead of bytes and ISO-8601 timestamps.
The same models are used when uploading (outbox), when materializing
pulled rows and when decoding live change events.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, BeforeValidator, Field, ValidationError, field_validator

from ..clock import format_timestamp, parse_timestamp
from ..errors import DecodeFailure
from .entities import Visibility

EntityType = Literal["captures", "collections"]

POSTS_TABLE = "posts"
CHAPTERS_TABLE = "chapters"

TABLE_FOR_ENTITY: dict[str, str] = {
    "captures": POSTS_TABLE,
    "collections": CHAPTERS_TABLE,
}
ENTITY_FOR_TABLE: dict[str, str] = {table: entity for entity, table in TABLE_FOR_ENTITY.items()}


def _coerce_timestamp(value: Any) -> Any:
    if value is None or value == "":
        return None
    if isinstance(value, (str, datetime)):
        try:
            return parse_timestamp(value)
        except ValueError as e:
            raise ValueError(f"invalid ISO-8601 timestamp: {value!r}") from e
    return value


UtcDatetime = Annotated[datetime, BeforeValidator(_coerce_timestamp)]
OptionalUtcDatetime = Annotated[Optional[datetime], BeforeValidator(_coerce_timestamp)]


class PostRecord(BaseModel):
    """Flattened ``posts`` row for one captured item."""

    id: str
    owner_id: str
    image_path: str | None = None
    live_photo_path: str | None = None
    message: str | None = None
    voice_url: str | None = None
    voice_path: str | None = None
    voice_duration: float | None = None
    voice_waveform: list[float] | None = None
    chapter_id: str | None = None
    visibility: Visibility = "private"
    created_at: UtcDatetime
    updated_at: OptionalUtcDatetime = None

    model_config = {"extra": "ignore"}

    @field_validator("id", "owner_id", mode="before")
    @classmethod
    def lower_uuid(cls, value: Any) -> Any:
        # Swift clients upload upper-case UUID strings
        return value.lower() if isinstance(value, str) else value

    @property
    def effective_updated_at(self) -> datetime:
        return self.updated_at or self.created_at

    @property
    def is_complete(self) -> bool:
        """A row without an image path is an interrupted upload."""
        return bool(self.image_path)

    def to_wire(self) -> dict[str, Any]:
        data = self.model_dump(mode="python")
        data["created_at"] = format_timestamp(self.created_at)
        data["updated_at"] = format_timestamp(self.updated_at) if self.updated_at else None
        return data


class ChapterRecord(BaseModel):
    """Flattened ``chapters`` row for one collection."""

    id: str
    owner_id: str
    name: str
    description_text: str | None = None
    cover_image_path: str | None = None
    created_at: UtcDatetime
    updated_at: UtcDatetime

    model_config = {"extra": "ignore"}

    @field_validator("id", "owner_id", mode="before")
    @classmethod
    def lower_uuid(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @property
    def effective_updated_at(self) -> datetime:
        return self.updated_at

    def to_wire(self) -> dict[str, Any]:
        data = self.model_dump(mode="python")
        data["created_at"] = format_timestamp(self.created_at)
        data["updated_at"] = format_timestamp(self.updated_at)
        return data


RemoteRecord = PostRecord | ChapterRecord


def decode_record(entity_type: str, raw: Any) -> RemoteRecord:
    """Decode a raw row for ``entity_type`` into its wire model.

    Raises:
        DecodeFailure: If the row is not a mapping or fails validation
    """
    if not isinstance(raw, dict):
        raise DecodeFailure(f"Expected an object for {entity_type}, got {type(raw).__name__}", raw)
    model = PostRecord if entity_type == "captures" else ChapterRecord
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise DecodeFailure(f"Malformed {entity_type} record: {e.error_count()} error(s)", raw) from e


class FeedAuthor(BaseModel):
    username: str | None = None
    avatar_data: str | None = None


class FeedPost(BaseModel):
    """Canonical social-feed post with its author, whichever shape it arrived in."""

    id: str
    owner_id: str
    image_path: str | None = None
    live_photo_path: str | None = None
    message: str | None = None
    voice_url: str | None = None
    voice_duration: float | None = None
    visibility: Visibility = "public"
    created_at: UtcDatetime
    updated_at: OptionalUtcDatetime = None
    author: FeedAuthor = Field(default_factory=FeedAuthor)


class _FeedRowBase(BaseModel):
    id: str
    owner_id: str
    image_path: str | None = None
    live_photo_path: str | None = None
    message: str | None = None
    voice_url: str | None = None
    voice_duration: float | None = None
    visibility: Visibility = "public"
    created_at: UtcDatetime
    updated_at: OptionalUtcDatetime = None

    model_config = {"extra": "ignore"}


class _NestedFeedRow(_FeedRowBase):
    """Row selected with an embedded ``profiles(username, avatar_data)`` join."""

    profiles: FeedAuthor

    @field_validator("profiles", mode="before")
    @classmethod
    def unwrap_single(cls, value: Any) -> Any:
        if isinstance(value, list) and len(value) == 1:
            return value[0]
        return value


class _FlatFeedRow(_FeedRowBase):
    """Row returned by the feed RPC with ``author_*`` columns."""

    author_username: str | None = None
    author_avatar_data: str | None = None


def decode_feed_post(raw: Any) -> FeedPost:
    """Decode a feed row: nested author shape first, flattened shape second.

    Raises:
        DecodeFailure: If neither shape matches
    """
    if not isinstance(raw, dict):
        raise DecodeFailure(f"Expected an object for feed post, got {type(raw).__name__}", raw)

    base_fields = set(_FeedRowBase.model_fields)

    if isinstance(raw.get("profiles"), (dict, list)):
        try:
            nested = _NestedFeedRow.model_validate(raw)
        except ValidationError:
            nested = None
        if nested is not None:
            return FeedPost(
                **nested.model_dump(include=base_fields),
                author=nested.profiles,
            )

    try:
        flat = _FlatFeedRow.model_validate(raw)
    except ValidationError as e:
        raise DecodeFailure(f"Malformed feed post: {e.error_count()} error(s)", raw) from e
    return FeedPost(
        **flat.model_dump(include=base_fields),
        author=FeedAuthor(username=flat.author_username, avatar_data=flat.author_avatar_data),
    )
