"""Outbox: upload locally created or edited entities to the remote stores.

One ``drain_pending`` pass walks every due collection, then every due
captured item, then every queued remote deletion. Each entity is
persisted as ``syncing`` before its first remote call and as ``synced``
or ``failed`` right after its last one; a failure never stops the pass.
Storage paths are derived from the owner and entity ID only, so a retry
after a crash overwrites the same objects instead of creating new ones.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Callable, Optional

from ..clock import utc_now
from ..config import BackendConfig, SyncTuning
from ..errors import CiraSyncError, NetworkUnavailable, NotAuthenticated, NotFound
from ..ledger import LedgerWriter
from ..models.entities import CapturedItem, Collection, SyncState
from ..models.remote import CHAPTERS_TABLE, POSTS_TABLE, TABLE_FOR_ENTITY, ChapterRecord, PostRecord
from ..models.reports import EntityOutcome, SyncReport
from ..paths import DataPaths
from ..remote.base import Filter, ObjectStore, RecordStore
from ..store.blobs import BlobCache
from ..store.db import LocalStore
from ..trace import write_drain_trace
from .events import EventBus, SyncEventKind

logger = logging.getLogger(__name__)

IMAGE_CONTENT_TYPE = "image/jpeg"
VIDEO_CONTENT_TYPE = "video/quicktime"
VOICE_CONTENT_TYPE = "audio/m4a"


def image_object_name(item_id: str) -> str:
    return f"image_{item_id}.jpg"


def video_object_name(item_id: str) -> str:
    return f"video_{item_id}.mov"


def voice_object_name(item_id: str) -> str:
    return f"voice_{item_id}.m4a"


def cover_object_name(collection_id: str) -> str:
    return f"chapter_cover_{collection_id}.jpg"


def storage_path(owner_id: str, object_name: str) -> str:
    """Deterministic object path: ``users/<owner>/<object name>``."""
    return f"users/{owner_id}/{object_name}"


def retry_delay(attempt: int, tuning: SyncTuning) -> timedelta:
    """Exponential backoff for the ``attempt``-th consecutive failure (1-based)."""
    seconds = tuning.retry_base_seconds * (2 ** max(attempt - 1, 0))
    return timedelta(seconds=min(seconds, tuning.retry_max_seconds))


class OutboxSyncEngine:
    """Drains pending local entities to the record and object stores."""

    def __init__(
        self,
        store: LocalStore,
        blobs: BlobCache,
        records: RecordStore,
        objects: ObjectStore,
        *,
        backend: Optional[BackendConfig] = None,
        tuning: Optional[SyncTuning] = None,
        is_online: Callable[[], bool] = lambda: True,
        bus: Optional[EventBus] = None,
        ledger: Optional[LedgerWriter] = None,
        paths: Optional[DataPaths] = None,
    ):
        self.store = store
        self.blobs = blobs
        self.records = records
        self.objects = objects
        self.backend = backend or BackendConfig()
        self.tuning = tuning or SyncTuning()
        self.is_online = is_online
        self.bus = bus or EventBus()
        self.ledger = ledger
        self.paths = paths
        self._draining = False

    @property
    def is_draining(self) -> bool:
        return self._draining

    async def drain_pending(self, force: bool = False) -> SyncReport:
        """Upload every due entity once.

        Args:
            force: Ignore retry backoff and attempt every pending/failed entity

        Returns:
            SyncReport with one outcome per attempted entity; ``skipped=True``
            if another drain was already running

        Raises:
            NetworkUnavailable: If the reachability check says offline
            NotAuthenticated: If there is no current identity
        """
        started_at = utc_now()
        if self._draining:
            logger.debug("Drain already in progress, skipping")
            return SyncReport(started_at=started_at, finished_at=started_at, skipped=True)

        self._draining = True
        try:
            if not self.is_online():
                raise NetworkUnavailable("Device is offline")
            owner_id = await asyncio.to_thread(self.records.current_identity)
            if not owner_id:
                raise NotAuthenticated("No signed-in user; sync is blocked")

            report = SyncReport(started_at=started_at)
            now = None if force else started_at

            for collection_id in self.store.list_due("collections", now):
                outcome = await self._sync_collection(collection_id, owner_id)
                if outcome is not None:
                    report.outcomes.append(outcome)

            for item_id in self.store.list_due("captures", now):
                outcome = await self._sync_item(item_id, owner_id)
                if outcome is not None:
                    report.outcomes.append(outcome)

            for entry in self.store.list_pending_deletes(now):
                report.outcomes.append(await self._send_delete(entry, owner_id))

            report.finished_at = utc_now()
        finally:
            self._draining = False

        self._record_drain(report)
        return report

    def _record_drain(self, report: SyncReport) -> None:
        logger.info(
            f"Drain finished: {report.synced_count} synced, {report.failed_count} failed, "
            f"{report.skipped_count} skipped"
        )
        self.bus.publish(
            SyncEventKind.DRAIN_FINISHED,
            detail={
                "synced": report.synced_count,
                "failed": report.failed_count,
                "skipped": report.skipped_count,
            },
        )
        if self.ledger is not None and report.outcomes:
            self.ledger.append_event(
                "DRAIN_COMPLETED",
                {
                    "synced": report.synced_count,
                    "failed": report.failed_count,
                    "skipped": report.skipped_count,
                },
            )
        if self.paths is not None and report.outcomes:
            run_id = self.ledger.run_id if self.ledger is not None else "local"
            write_drain_trace(report, run_id, self.paths)

    # ------------------------------------------------------------------
    # Captured items
    # ------------------------------------------------------------------

    def _upload_blob(self, bucket: str, path: str, kind: str, name: str, content_type: str) -> str:
        data = self.blobs.read_bytes(kind, name)
        return self.objects.upload(bucket, path, data, content_type)

    async def _sync_item(self, item_id: str, owner_id: str) -> Optional[EntityOutcome]:
        item = self.store.get_item(item_id)
        if item is None:
            return None

        if not self.blobs.exists("images", item.image_file):
            # Never publish a record without its photo
            logger.warning(f"Capture {item_id} has no image payload; not uploading")
            return EntityOutcome(
                entity_type="captures", entity_id=item_id, status="skipped", error="missing image payload"
            )

        revision = self.store.mark_syncing("captures", item_id)
        uploaded: list[str] = []
        try:
            record = await self._upload_item(item, owner_id, uploaded)
            await asyncio.to_thread(self.records.upsert, POSTS_TABLE, record.to_wire())
        except (CiraSyncError, OSError) as e:
            return self._fail("captures", item, e, uploaded)

        return self._succeed("captures", item_id, revision, owner_id, uploaded)

    async def _upload_item(self, item: CapturedItem, owner_id: str, uploaded: list[str]) -> PostRecord:
        photos = self.backend.photos_bucket
        audios = self.backend.audios_bucket

        voice_url = voice_path = None
        if item.voice is not None and self.blobs.exists("voice", item.voice.audio_file):
            voice_path = storage_path(owner_id, voice_object_name(item.id))
            await asyncio.to_thread(
                self._upload_blob, audios, voice_path, "voice", item.voice.audio_file, VOICE_CONTENT_TYPE
            )
            uploaded.append(f"{audios}/{voice_path}")
            voice_url = self.objects.public_url(audios, voice_path)

        image_path = storage_path(owner_id, image_object_name(item.id))
        await asyncio.to_thread(
            self._upload_blob, photos, image_path, "images", item.image_file, IMAGE_CONTENT_TYPE
        )
        uploaded.append(f"{photos}/{image_path}")

        video_path = None
        if item.video_file and self.blobs.exists("video", item.video_file):
            video_path = storage_path(owner_id, video_object_name(item.id))
            await asyncio.to_thread(
                self._upload_blob, photos, video_path, "video", item.video_file, VIDEO_CONTENT_TYPE
            )
            uploaded.append(f"{photos}/{video_path}")

        return PostRecord(
            id=item.id,
            owner_id=owner_id,
            image_path=image_path,
            live_photo_path=video_path,
            message=item.caption,
            voice_url=voice_url,
            voice_path=voice_path,
            voice_duration=item.voice.duration if voice_path and item.voice else None,
            voice_waveform=item.voice.waveform if voice_path and item.voice else None,
            chapter_id=item.collection_id,
            visibility=item.visibility,
            created_at=item.created_at,
            updated_at=item.updated_at,
        )

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    async def _sync_collection(self, collection_id: str, owner_id: str) -> Optional[EntityOutcome]:
        collection = self.store.get_collection(collection_id)
        if collection is None:
            return None

        revision = self.store.mark_syncing("collections", collection_id)
        uploaded: list[str] = []
        try:
            record = await self._upload_collection(collection, owner_id, uploaded)
            await asyncio.to_thread(self.records.upsert, CHAPTERS_TABLE, record.to_wire())
        except (CiraSyncError, OSError) as e:
            return self._fail("collections", collection, e, uploaded)

        return self._succeed("collections", collection_id, revision, owner_id, uploaded)

    async def _upload_collection(self, collection: Collection, owner_id: str, uploaded: list[str]) -> ChapterRecord:
        cover_path = None
        if collection.cover_file and self.blobs.exists("covers", collection.cover_file):
            photos = self.backend.photos_bucket
            cover_path = storage_path(owner_id, cover_object_name(collection.id))
            await asyncio.to_thread(
                self._upload_blob, photos, cover_path, "covers", collection.cover_file, IMAGE_CONTENT_TYPE
            )
            uploaded.append(f"{photos}/{cover_path}")

        return ChapterRecord(
            id=collection.id,
            owner_id=owner_id,
            name=collection.name,
            description_text=collection.description,
            cover_image_path=cover_path,
            created_at=collection.created_at,
            updated_at=collection.updated_at,
        )

    # ------------------------------------------------------------------
    # Outcome bookkeeping
    # ------------------------------------------------------------------

    def _succeed(
        self, entity_type: str, entity_id: str, revision: int, owner_id: str, uploaded: list[str]
    ) -> EntityOutcome:
        try:
            state = self.store.mark_synced(entity_type, entity_id, revision, owner_id)
        except NotFound:
            # Deleted locally while uploading; the queued delete cleans up remotely
            logger.info(f"{entity_type} {entity_id} was deleted during upload")
            return EntityOutcome(
                entity_type=entity_type,
                entity_id=entity_id,
                status="skipped",
                error="deleted during upload",
                remote_paths=uploaded,
            )

        status = "synced" if state is SyncState.SYNCED else "requeued"
        if status == "requeued":
            logger.info(f"{entity_type} {entity_id} changed during upload; queued again")
        else:
            logger.debug(f"{entity_type} {entity_id} synced")

        self.bus.publish(
            SyncEventKind.ENTITY_SYNCED,
            entity_type=entity_type,
            entity_id=entity_id,
            detail={"state": state.value},
        )
        if self.ledger is not None:
            self.ledger.append_event(
                "ITEM_SYNCED",
                {"entity_type": entity_type, "state": state.value, "paths": uploaded},
                entity_id=entity_id,
            )
        return EntityOutcome(entity_type=entity_type, entity_id=entity_id, status=status, remote_paths=uploaded)

    def _fail(
        self,
        entity_type: str,
        entity: CapturedItem | Collection,
        error: Exception,
        uploaded: list[str],
    ) -> EntityOutcome:
        next_attempt_at = utc_now() + retry_delay(entity.sync_attempts + 1, self.tuning)
        attempts = self.store.mark_failed(entity_type, entity.id, str(error), next_attempt_at)
        logger.warning(f"Sync of {entity_type} {entity.id} failed (attempt {attempts}): {error}")

        self.bus.publish(
            SyncEventKind.ENTITY_SYNC_FAILED,
            entity_type=entity_type,
            entity_id=entity.id,
            detail={"error": str(error), "attempts": attempts},
        )
        if self.ledger is not None:
            self.ledger.append_event(
                "ITEM_SYNC_FAILED",
                {
                    "entity_type": entity_type,
                    "error": str(error),
                    "attempts": attempts,
                    "next_attempt_at": next_attempt_at.isoformat(),
                },
                entity_id=entity.id,
            )
        return EntityOutcome(
            entity_type=entity_type,
            entity_id=entity.id,
            status="failed",
            error=str(error),
            remote_paths=uploaded,
        )

    # ------------------------------------------------------------------
    # Queued remote deletions
    # ------------------------------------------------------------------

    async def _send_delete(self, entry: dict, owner_id: str) -> EntityOutcome:
        entity_type = entry["entity_type"]
        entity_id = entry["entity_id"]
        owner = entry["owner_id"] or owner_id
        try:
            await asyncio.to_thread(
                self.records.delete,
                TABLE_FOR_ENTITY[entity_type],
                [Filter("id", "eq", entity_id), Filter("owner_id", "eq", owner)],
            )
            buckets = {"photos": self.backend.photos_bucket, "audios": self.backend.audios_bucket}
            for bucket_key, names in entry["object_paths"].items():
                paths = [storage_path(owner, name) for name in names]
                await asyncio.to_thread(self.objects.delete, buckets.get(bucket_key, bucket_key), paths)
        except CiraSyncError as e:
            next_attempt_at = utc_now() + retry_delay(entry["attempts"] + 1, self.tuning)
            self.store.fail_delete(entity_type, entity_id, str(e), next_attempt_at)
            logger.warning(f"Remote delete of {entity_type} {entity_id} failed: {e}")
            return EntityOutcome(entity_type="deletes", entity_id=entity_id, status="failed", error=str(e))

        self.store.complete_delete(entity_type, entity_id)
        if self.ledger is not None:
            self.ledger.append_event("REMOTE_DELETE_SENT", {"entity_type": entity_type}, entity_id=entity_id)
        return EntityOutcome(entity_type="deletes", entity_id=entity_id, status="deleted")
