"""Pydantic models for outbox drain and pull results."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from ..errors import PartialBatchFailure

OutcomeStatus = Literal["synced", "requeued", "failed", "skipped", "deleted"]


class EntityOutcome(BaseModel):
    """What happened to one entity during a drain."""

    entity_type: Literal["captures", "collections", "deletes"]
    entity_id: str
    status: OutcomeStatus
    error: str | None = Field(default=None, description="Failure reason if status is failed")
    remote_paths: list[str] = Field(default_factory=list, description="Object paths written")


class SyncReport(BaseModel):
    """Result of one ``drain_pending`` call.

    A skipped report means another drain was already in progress and
    nothing was attempted.
    """

    started_at: datetime
    finished_at: datetime | None = None
    outcomes: list[EntityOutcome] = Field(default_factory=list)
    skipped: bool = Field(default=False, description="True when single-flight rejected the call")

    @property
    def synced_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status in ("synced", "requeued", "deleted"))

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "failed")

    @property
    def skipped_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "skipped")

    @property
    def failures(self) -> list[EntityOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]

    def outcome_for(self, entity_id: str) -> EntityOutcome | None:
        for outcome in self.outcomes:
            if outcome.entity_id == entity_id:
                return outcome
        return None

    def raise_for_failures(self) -> None:
        """Raise PartialBatchFailure if any entity failed."""
        if self.failed_count:
            raise PartialBatchFailure(self)


class PullReport(BaseModel):
    """Result of one ``pull`` call for a single entity type."""

    entity_type: str
    fetched: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = Field(default=0, description="Incomplete or locally deleted records")
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
    checkpoint_before: datetime | None = None
    checkpoint_after: datetime | None = None

    @property
    def applied(self) -> int:
        return self.created + self.updated


class FullSyncResult(BaseModel):
    """Result of ``SyncService.sync_now``: repair, drain, then pulls."""

    started_at: datetime
    finished_at: datetime | None = None
    skipped: bool = False
    reason: str | None = Field(default=None, description="Why the sync was skipped")
    repaired: dict[str, str] = Field(default_factory=dict)
    drain: SyncReport | None = None
    pulls: list[PullReport] = Field(default_factory=list)
