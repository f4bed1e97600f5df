"""Last-writer-wins application of remote records to the local store.

Shared by the pull engine and the live change listener so both follow
one conflict rule: a remote record replaces local state only when its
``updated_at`` is strictly newer. Ties keep the local copy.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Literal, Optional

from ..config import BackendConfig
from ..ledger import LedgerWriter
from ..models.entities import CapturedItem, Collection, SyncState, VoiceClip
from ..models.remote import ChapterRecord, PostRecord, RemoteRecord
from ..remote.base import ObjectStore
from ..store.blobs import BlobCache, BlobKind, blob_name
from ..store.db import LocalStore
from .events import EventBus, SyncEventKind

logger = logging.getLogger(__name__)

MergeResult = Literal["created", "updated", "unchanged", "skipped"]


class RemoteMerger:
    """Materializes remote records locally, downloading referenced payloads."""

    def __init__(
        self,
        store: LocalStore,
        blobs: BlobCache,
        objects: ObjectStore,
        *,
        backend: Optional[BackendConfig] = None,
        bus: Optional[EventBus] = None,
        ledger: Optional[LedgerWriter] = None,
    ):
        self.store = store
        self.blobs = blobs
        self.objects = objects
        self.backend = backend or BackendConfig()
        self.bus = bus or EventBus()
        self.ledger = ledger

    async def apply(self, entity_type: str, record: RemoteRecord, source: str = "pull") -> MergeResult:
        """Apply one remote record.

        Returns:
            ``skipped`` for records queued for local deletion or incomplete
            uploads, otherwise the store's create/update/unchanged result

        Raises:
            TransportFailure: If a referenced payload cannot be downloaded
            OSError: If a payload cannot be written to the blob cache
        """
        if self.store.is_delete_queued(entity_type, record.id):
            logger.debug(f"Ignoring remote {entity_type} {record.id}: deleted locally")
            return "skipped"

        if isinstance(record, PostRecord):
            result = await self._apply_post(record)
        elif isinstance(record, ChapterRecord):
            result = await self._apply_chapter(record)
        else:
            raise TypeError(f"Unsupported record type: {type(record).__name__}")

        if result in ("created", "updated"):
            self.bus.publish(
                SyncEventKind.REMOTE_APPLIED,
                entity_type=entity_type,
                entity_id=record.id,
                detail={"result": result, "source": source},
            )
            if self.ledger is not None:
                self.ledger.append_event(
                    "REMOTE_APPLIED",
                    {"entity_type": entity_type, "result": result, "source": source},
                    entity_id=record.id,
                )
        return result

    async def _download(self, bucket: str, path: str, kind: BlobKind, name: str, refresh: bool) -> str:
        if not refresh and self.blobs.exists(kind, name):
            return name
        data = await asyncio.to_thread(self.objects.download, bucket, path)
        return self.blobs.put_bytes(kind, name, data)

    def _voice_object_path(self, record: PostRecord) -> Optional[str]:
        if record.voice_path:
            return record.voice_path
        if record.voice_url:
            marker = f"/public/{self.backend.audios_bucket}/"
            if marker in record.voice_url:
                return record.voice_url.split(marker, 1)[1]
        return None

    async def _apply_post(self, record: PostRecord) -> MergeResult:
        if not record.is_complete:
            logger.info(f"Skipping incomplete remote post {record.id} (no image path)")
            return "skipped"

        local = self.store.get_item(record.id)
        remote_updated = record.effective_updated_at
        if local is not None and remote_updated <= local.updated_at:
            return "unchanged"

        photos = self.backend.photos_bucket
        # An update may re-upload media under the same path
        refresh = local is not None
        image_file = await self._download(photos, record.image_path, "images", blob_name("images", record.id), refresh)

        video_file = None
        if record.live_photo_path:
            video_file = await self._download(
                photos, record.live_photo_path, "video", blob_name("video", record.id), refresh
            )

        voice = None
        voice_path = self._voice_object_path(record)
        if voice_path:
            voice_id = local.voice.id if local is not None and local.voice is not None else str(uuid.uuid4())
            audio_file = await self._download(
                self.backend.audios_bucket, voice_path, "voice", blob_name("voice", voice_id), refresh
            )
            voice = VoiceClip(
                id=voice_id,
                item_id=record.id,
                audio_file=audio_file,
                duration=max(record.voice_duration or 0.0, 0.0),
                waveform=record.voice_waveform,
                created_at=record.created_at,
            )

        item = CapturedItem(
            id=record.id,
            owner_id=record.owner_id,
            image_file=image_file,
            thumbnail_file=local.thumbnail_file if local is not None else None,
            video_file=video_file,
            voice=voice,
            collection_id=record.chapter_id,
            caption=record.message,
            visibility=record.visibility,
            created_at=record.created_at,
            updated_at=remote_updated,
            sync_state=SyncState.SYNCED,
        )
        result = self.store.apply_remote_item(item)

        if result == "updated" and local is not None:
            if local.voice is not None and voice is None:
                self.blobs.delete("voice", local.voice.audio_file)
            if local.video_file and video_file is None:
                self.blobs.delete("video", local.video_file)
        return result

    async def _apply_chapter(self, record: ChapterRecord) -> MergeResult:
        local = self.store.get_collection(record.id)
        if local is not None and record.updated_at <= local.updated_at:
            return "unchanged"

        cover_file = local.cover_file if local is not None else None
        if record.cover_image_path:
            cover_file = await self._download(
                self.backend.photos_bucket,
                record.cover_image_path,
                "covers",
                blob_name("covers", record.id),
                refresh=local is not None,
            )

        collection = Collection(
            id=record.id,
            owner_id=record.owner_id,
            name=record.name,
            description=record.description_text,
            cover_file=cover_file,
            created_at=record.created_at,
            updated_at=record.updated_at,
            sync_state=SyncState.SYNCED,
        )
        return self.store.apply_remote_collection(collection)

    def apply_delete(self, entity_type: str, entity_id: str, source: str = "live") -> bool:
        """Remove a locally cached entity deleted remotely; unknown IDs are a no-op."""
        if entity_type == "captures":
            item = self.store.delete_item(entity_id)
            if item is None:
                return False
            self.blobs.delete("images", item.image_file)
            self.blobs.delete("thumbnails", item.thumbnail_file)
            self.blobs.delete("video", item.video_file)
            if item.voice is not None:
                self.blobs.delete("voice", item.voice.audio_file)
        elif entity_type == "collections":
            collection = self.store.delete_collection(entity_id)
            if collection is None:
                return False
            self.blobs.delete("covers", collection.cover_file)
        else:
            raise ValueError(f"Unknown entity type: {entity_type}")

        logger.info(f"Removed {entity_type} {entity_id} deleted remotely")
        self.bus.publish(
            SyncEventKind.REMOTE_DELETED,
            entity_type=entity_type,
            entity_id=entity_id,
            detail={"source": source},
        )
        if self.ledger is not None:
            self.ledger.append_event("REMOTE_DELETED", {"entity_type": entity_type, "source": source}, entity_id=entity_id)
        return True
