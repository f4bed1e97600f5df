"""Pydantic models for live change-feed events."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from ..errors import DecodeFailure
from .remote import OptionalUtcDatetime


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """One insert/update/delete notification from the change feed.

    ``record`` is the new row snapshot for inserts and updates; deletes
    only carry the old row's identity in ``old_record``.
    """

    table: str
    type: ChangeType
    record: dict[str, Any] | None = None
    old_record: dict[str, Any] | None = None
    commit_timestamp: OptionalUtcDatetime = None

    @property
    def deleted_id(self) -> Optional[str]:
        if self.type is not ChangeType.DELETE or not self.old_record:
            return None
        value = self.old_record.get("id")
        return str(value).lower() if value else None

    @classmethod
    def from_payload(cls, payload: Any) -> "ChangeEvent":
        """Decode a ``postgres_changes`` payload.

        Accepts both the current realtime shape
        (``{"data": {"type", "table", "record", "old_record"}}``) and the
        legacy one (``{"eventType", "table", "new", "old"}``).

        Raises:
            DecodeFailure: If the payload matches neither shape
        """
        if not isinstance(payload, dict):
            raise DecodeFailure("Change payload is not an object", payload)

        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload

        if "eventType" in data:
            data = {
                "table": data.get("table"),
                "type": data.get("eventType"),
                "record": data.get("new") or None,
                "old_record": data.get("old") or None,
                "commit_timestamp": data.get("commit_timestamp"),
            }

        try:
            event = cls.model_validate(
                {
                    "table": data.get("table"),
                    "type": str(data.get("type", "")).upper(),
                    "record": data.get("record") or None,
                    "old_record": data.get("old_record") or None,
                    "commit_timestamp": data.get("commit_timestamp"),
                }
            )
        except ValidationError as e:
            raise DecodeFailure(f"Malformed change event: {e.error_count()} error(s)", payload) from e

        if event.type is ChangeType.DELETE and event.deleted_id is None:
            raise DecodeFailure("Delete event without an old record id", payload)
        if event.type is not ChangeType.DELETE and event.record is None:
            raise DecodeFailure(f"{event.type.value} event without a record", payload)
        return event


class Subscription(BaseModel):
    """A change-feed registration: one channel watching one table."""

    channel: str = Field(description="Channel topic name, e.g. chapters_<owner>")
    table: str
    schema_name: str = Field(default="public")
    filter: str | None = Field(default=None, description="PostgREST-style filter, e.g. owner_id=eq.<id>")

    model_config = {"frozen": True}

