"""Local capture operations: everything a user does while possibly offline.

Every function writes the local store first and leaves the entity
``pending``; the outbox uploads it later.
"""

import logging
import uuid
from pathlib import Path
from typing import Optional

from .clock import utc_now
from .errors import NotFound
from .ledger import LedgerWriter
from .models.entities import CapturedItem, Collection, SyncState, Visibility, VoiceClip
from .store.blobs import BlobCache, blob_name
from .store.db import LocalStore
from .sync.outbox import cover_object_name, image_object_name, video_object_name, voice_object_name

logger = logging.getLogger(__name__)


def _was_uploaded(entity: CapturedItem | Collection) -> bool:
    """True when a remote copy may exist and must be deleted remotely too."""
    return entity.owner_id is not None or entity.sync_state is not SyncState.PENDING


def _attach_cover(store: LocalStore, blobs: BlobCache, collection: Collection, item: CapturedItem) -> Collection:
    """Touch the collection; the first photo added also becomes its cover."""
    if collection.cover_file is None and blobs.exists("images", item.image_file):
        cover_name = blob_name("covers", collection.id)
        blobs.put_file("covers", cover_name, blobs.path("images", item.image_file))
        return store.edit_collection(collection.id, cover_file=cover_name)
    return store.edit_collection(collection.id)


def create_capture(
    store: LocalStore,
    blobs: BlobCache,
    ledger_writer: LedgerWriter,
    image_source: Path,
    *,
    caption: Optional[str] = None,
    collection_id: Optional[str] = None,
    visibility: Visibility = "private",
    video_source: Optional[Path] = None,
    voice_source: Optional[Path] = None,
    voice_duration: Optional[float] = None,
    voice_waveform: Optional[list[float]] = None,
    thumbnail_source: Optional[Path] = None,
) -> CapturedItem:
    """Create a captured item from files on disk.

    Args:
        store: Local store
        blobs: Blob cache the payloads are copied into
        ledger_writer: LedgerWriter instance
        image_source: Primary photo
        caption: Optional text
        collection_id: Optional album to file the capture under
        visibility: Audience for the post
        video_source: Optional paired live-photo movie
        voice_source: Optional voice note (requires voice_duration)
        voice_duration: Voice note length in seconds
        voice_waveform: Optional levels in [0, 1]
        thumbnail_source: Optional pre-rendered thumbnail

    Returns:
        The stored CapturedItem, state ``pending``

    Raises:
        FileNotFoundError: If a source file does not exist
        NotFound: If collection_id does not exist
        ValueError: If a voice note has no duration
    """
    for source in (image_source, video_source, voice_source, thumbnail_source):
        if source is not None and not source.is_file():
            raise FileNotFoundError(f"Source file not found: {source}")
    if voice_source is not None and voice_duration is None:
        raise ValueError("voice_duration is required with a voice note")

    collection = store.require_collection(collection_id) if collection_id else None

    item_id = str(uuid.uuid4())
    now = utc_now()

    image_file = blobs.put_file("images", blob_name("images", item_id), image_source)
    thumbnail_file = (
        blobs.put_file("thumbnails", blob_name("thumbnails", item_id), thumbnail_source)
        if thumbnail_source is not None
        else None
    )
    video_file = (
        blobs.put_file("video", blob_name("video", item_id), video_source) if video_source is not None else None
    )

    voice = None
    if voice_source is not None:
        voice_id = str(uuid.uuid4())
        voice = VoiceClip(
            id=voice_id,
            item_id=item_id,
            audio_file=blobs.put_file("voice", blob_name("voice", voice_id), voice_source),
            duration=voice_duration,
            waveform=voice_waveform,
            created_at=now,
        )

    item = store.insert_item(
        CapturedItem(
            id=item_id,
            image_file=image_file,
            thumbnail_file=thumbnail_file,
            video_file=video_file,
            voice=voice,
            collection_id=collection_id,
            caption=caption,
            visibility=visibility,
            created_at=now,
            updated_at=now,
        )
    )

    if collection is not None:
        _attach_cover(store, blobs, collection, item)

    ledger_writer.append_event(
        event_type="CAPTURE_CREATED",
        entity_id=item_id,
        payload={
            "source": str(image_source),
            "collection_id": collection_id,
            "has_voice": voice is not None,
            "has_video": video_file is not None,
        },
    )
    return item


def edit_caption(store: LocalStore, ledger_writer: LedgerWriter, item_id: str, caption: Optional[str]) -> CapturedItem:
    item = store.edit_item(item_id, caption=caption)
    ledger_writer.append_event("CAPTURE_EDITED", {"field": "caption"}, entity_id=item_id)
    return item


def move_to_collection(
    store: LocalStore,
    blobs: BlobCache,
    ledger_writer: LedgerWriter,
    item_id: str,
    collection_id: Optional[str],
) -> CapturedItem:
    """File an item under another collection, or none with ``collection_id=None``."""
    collection = store.require_collection(collection_id) if collection_id else None
    item = store.edit_item(item_id, collection_id=collection_id)
    if collection is not None:
        _attach_cover(store, blobs, collection, item)
    ledger_writer.append_event("CAPTURE_EDITED", {"field": "collection_id", "value": collection_id}, entity_id=item_id)
    return item


def delete_capture(store: LocalStore, blobs: BlobCache, ledger_writer: LedgerWriter, item_id: str) -> CapturedItem:
    """Delete an item with its voice clip and payloads.

    A remote deletion is queued when the item may already exist remotely.

    Raises:
        NotFound: If the item does not exist
    """
    item = store.require_item(item_id)

    if _was_uploaded(item):
        photos = [image_object_name(item.id)]
        if item.video_file:
            photos.append(video_object_name(item.id))
        object_names: dict[str, list[str]] = {"photos": photos}
        if item.voice is not None:
            object_names["audios"] = [voice_object_name(item.id)]
        store.queue_delete("captures", item.id, item.owner_id, object_names)

    store.delete_item(item_id)
    blobs.delete("images", item.image_file)
    blobs.delete("thumbnails", item.thumbnail_file)
    blobs.delete("video", item.video_file)
    if item.voice is not None:
        blobs.delete("voice", item.voice.audio_file)

    ledger_writer.append_event(
        "CAPTURE_DELETED", {"remote_delete_queued": _was_uploaded(item)}, entity_id=item_id
    )
    return item


def create_collection(
    store: LocalStore,
    ledger_writer: LedgerWriter,
    name: str,
    description: Optional[str] = None,
) -> Collection:
    name = name.strip()
    if not name:
        raise ValueError("Collection name must not be empty")
    now = utc_now()
    collection = store.insert_collection(
        Collection(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            created_at=now,
            updated_at=now,
        )
    )
    ledger_writer.append_event("COLLECTION_CREATED", {"name": name}, entity_id=collection.id)
    return collection


def rename_collection(
    store: LocalStore,
    ledger_writer: LedgerWriter,
    collection_id: str,
    name: str,
    description: Optional[str] = None,
) -> Collection:
    name = name.strip()
    if not name:
        raise ValueError("Collection name must not be empty")
    changes = {"name": name}
    if description is not None:
        changes["description"] = description
    collection = store.edit_collection(collection_id, **changes)
    ledger_writer.append_event("COLLECTION_EDITED", changes, entity_id=collection_id)
    return collection


def delete_collection(
    store: LocalStore, blobs: BlobCache, ledger_writer: LedgerWriter, collection_id: str
) -> Collection:
    """Delete a collection; its items stay but lose their collection.

    Raises:
        NotFound: If the collection does not exist
    """
    collection = store.require_collection(collection_id)
    if _was_uploaded(collection):
        object_names = {"photos": [cover_object_name(collection.id)]} if collection.cover_file else {}
        store.queue_delete("collections", collection.id, collection.owner_id, object_names)

    detached = store.count_items(collection_id)
    store.delete_collection(collection_id)
    blobs.delete("covers", collection.cover_file)

    ledger_writer.append_event("COLLECTION_DELETED", {"detached_items": detached}, entity_id=collection_id)
    return collection


def retry_failed(store: LocalStore, ledger_writer: LedgerWriter, entity_id: Optional[str] = None) -> list[str]:
    """Manual retry: put failed entities back in the queue with backoff cleared.

    With ``entity_id`` only that capture or collection is re-queued.

    Returns:
        IDs that were re-queued

    Raises:
        NotFound: If entity_id matches no capture or collection
    """
    if entity_id is None:
        requeued = store.reset_failed("collections") + store.reset_failed("captures")
    else:
        if store.get_item(entity_id) is not None:
            store.mark_pending("captures", entity_id)
        elif store.get_collection(entity_id) is not None:
            store.mark_pending("collections", entity_id)
        else:
            raise NotFound(f"No capture or collection with id {entity_id}")
        requeued = [entity_id]

    if requeued:
        logger.info(f"Re-queued {len(requeued)} entities for sync")
        ledger_writer.append_event("RETRY_REQUESTED", {"count": len(requeued), "ids": requeued})
    return requeued
