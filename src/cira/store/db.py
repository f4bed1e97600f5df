"""SQLite-backed local store for captures, collections and sync bookkeeping."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Literal, Optional

from ..clock import format_timestamp, next_timestamp, parse_timestamp, utc_now
from ..errors import NotFound, StoreUnavailable
from ..models.entities import CapturedItem, Collection, SyncState, VoiceClip

logger = logging.getLogger(__name__)

ApplyResult = Literal["created", "updated", "unchanged"]

_TABLES = {"captures": "captured_items", "collections": "collections"}

_ITEM_EDITABLE = {"caption", "collection_id", "visibility", "thumbnail_file"}
_COLLECTION_EDITABLE = {"name", "description", "cover_file"}

SCHEMA_VERSION = 1


def _ts(value: Optional[datetime]) -> Optional[str]:
    return format_timestamp(value) if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return parse_timestamp(value) if value else None


def _table(entity_type: str) -> str:
    try:
        return _TABLES[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type}") from None


class LocalStore:
    """Durable local state; every write is committed before returning.

    Opening the store resets entities left in ``syncing`` by a previous
    process to ``failed`` so they are retried from the first step.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._ensure_schema()
            self.recovered = self._reset_interrupted()
        except (OSError, sqlite3.Error) as e:
            raise StoreUnavailable(f"Cannot open local store at {db_path}: {e}") from e
        if self.recovered:
            logger.warning(f"Reset {self.recovered} interrupted upload(s) to failed")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS meta(
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS collections(
                  id TEXT PRIMARY KEY,
                  owner_id TEXT,
                  name TEXT NOT NULL,
                  description TEXT,
                  cover_file TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  sync_state TEXT NOT NULL,
                  local_revision INTEGER NOT NULL DEFAULT 0,
                  sync_attempts INTEGER NOT NULL DEFAULT 0,
                  next_attempt_at TEXT,
                  last_error TEXT
                );

                CREATE TABLE IF NOT EXISTS captured_items(
                  id TEXT PRIMARY KEY,
                  owner_id TEXT,
                  image_file TEXT,
                  thumbnail_file TEXT,
                  video_file TEXT,
                  collection_id TEXT,
                  caption TEXT,
                  visibility TEXT NOT NULL DEFAULT 'private',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  sync_state TEXT NOT NULL,
                  local_revision INTEGER NOT NULL DEFAULT 0,
                  sync_attempts INTEGER NOT NULL DEFAULT 0,
                  next_attempt_at TEXT,
                  last_error TEXT
                );

                CREATE TABLE IF NOT EXISTS voice_clips(
                  id TEXT PRIMARY KEY,
                  item_id TEXT UNIQUE NOT NULL,
                  audio_file TEXT NOT NULL,
                  duration REAL NOT NULL,
                  waveform_json TEXT,
                  created_at TEXT NOT NULL,
                  FOREIGN KEY(item_id) REFERENCES captured_items(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS sync_checkpoints(
                  entity_type TEXT PRIMARY KEY,
                  last_pulled_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS pending_deletes(
                  entity_type TEXT NOT NULL,
                  entity_id TEXT NOT NULL,
                  owner_id TEXT,
                  object_paths_json TEXT NOT NULL,
                  queued_at TEXT NOT NULL,
                  attempts INTEGER NOT NULL DEFAULT 0,
                  next_attempt_at TEXT,
                  last_error TEXT,
                  PRIMARY KEY(entity_type, entity_id)
                );

                CREATE INDEX IF NOT EXISTS idx_items_state ON captured_items(sync_state);
                CREATE INDEX IF NOT EXISTS idx_items_collection ON captured_items(collection_id);
                CREATE INDEX IF NOT EXISTS idx_collections_state ON collections(sync_state);
                """
            )
            conn.execute(
                "INSERT INTO meta(key, value) VALUES('schema_version', ?) "
                "ON CONFLICT(key) DO NOTHING",
                (str(SCHEMA_VERSION),),
            )
            conn.commit()
        finally:
            conn.close()

    def _reset_interrupted(self) -> int:
        conn = self._connect()
        try:
            with conn:
                total = 0
                for table in _TABLES.values():
                    cur = conn.execute(
                        f"UPDATE {table} SET sync_state = ?, next_attempt_at = NULL, "
                        "last_error = COALESCE(last_error, 'interrupted') WHERE sync_state = ?",
                        (SyncState.FAILED.value, SyncState.SYNCING.value),
                    )
                    total += cur.rowcount
            return total
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _voice_from_row(row: sqlite3.Row) -> VoiceClip:
        waveform = json.loads(row["waveform_json"]) if row["waveform_json"] else None
        return VoiceClip(
            id=row["id"],
            item_id=row["item_id"],
            audio_file=row["audio_file"],
            duration=float(row["duration"]),
            waveform=waveform,
            created_at=parse_timestamp(row["created_at"]),
        )

    def _item_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> CapturedItem:
        voice_row = conn.execute("SELECT * FROM voice_clips WHERE item_id = ?", (row["id"],)).fetchone()
        return CapturedItem(
            id=row["id"],
            owner_id=row["owner_id"],
            image_file=row["image_file"],
            thumbnail_file=row["thumbnail_file"],
            video_file=row["video_file"],
            voice=self._voice_from_row(voice_row) if voice_row is not None else None,
            collection_id=row["collection_id"],
            caption=row["caption"],
            visibility=row["visibility"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            sync_state=SyncState(row["sync_state"]),
            local_revision=int(row["local_revision"]),
            sync_attempts=int(row["sync_attempts"]),
            next_attempt_at=_parse(row["next_attempt_at"]),
            last_error=row["last_error"],
        )

    @staticmethod
    def _collection_from_row(row: sqlite3.Row) -> Collection:
        return Collection(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            description=row["description"],
            cover_file=row["cover_file"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            sync_state=SyncState(row["sync_state"]),
            local_revision=int(row["local_revision"]),
            sync_attempts=int(row["sync_attempts"]),
            next_attempt_at=_parse(row["next_attempt_at"]),
            last_error=row["last_error"],
        )

    @staticmethod
    def _write_voice(conn: sqlite3.Connection, voice: VoiceClip) -> None:
        conn.execute(
            """
            INSERT INTO voice_clips(id, item_id, audio_file, duration, waveform_json, created_at)
            VALUES(?, ?, ?, ?, ?, ?)
            ON CONFLICT(item_id) DO UPDATE SET
              id = excluded.id,
              audio_file = excluded.audio_file,
              duration = excluded.duration,
              waveform_json = excluded.waveform_json,
              created_at = excluded.created_at
            """,
            (
                voice.id,
                voice.item_id,
                voice.audio_file,
                voice.duration,
                json.dumps(voice.waveform) if voice.waveform is not None else None,
                format_timestamp(voice.created_at),
            ),
        )

    # ------------------------------------------------------------------
    # Captured items
    # ------------------------------------------------------------------

    def insert_item(self, item: CapturedItem) -> CapturedItem:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO captured_items(
                      id, owner_id, image_file, thumbnail_file, video_file, collection_id,
                      caption, visibility, created_at, updated_at, sync_state,
                      local_revision, sync_attempts, next_attempt_at, last_error
                    )
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        item.id,
                        item.owner_id,
                        item.image_file,
                        item.thumbnail_file,
                        item.video_file,
                        item.collection_id,
                        item.caption,
                        item.visibility,
                        format_timestamp(item.created_at),
                        format_timestamp(item.updated_at),
                        item.sync_state.value,
                        item.local_revision,
                        item.sync_attempts,
                        _ts(item.next_attempt_at),
                        item.last_error,
                    ),
                )
                if item.voice is not None:
                    self._write_voice(conn, item.voice)
        finally:
            conn.close()
        return item

    def get_item(self, item_id: str) -> Optional[CapturedItem]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM captured_items WHERE id = ?", (item_id,)).fetchone()
            return self._item_from_row(conn, row) if row is not None else None
        finally:
            conn.close()

    def require_item(self, item_id: str) -> CapturedItem:
        item = self.get_item(item_id)
        if item is None:
            raise NotFound(f"Unknown capture: {item_id}")
        return item

    def list_items(
        self,
        *,
        states: Optional[list[SyncState]] = None,
        collection_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[CapturedItem]:
        """List items newest first, optionally filtered by state or collection."""
        clauses: list[str] = []
        params: list[Any] = []
        if states:
            clauses.append(f"sync_state IN ({', '.join('?' for _ in states)})")
            params.extend(s.value for s in states)
        if collection_id is not None:
            clauses.append("collection_id = ?")
            params.append(collection_id)
        sql = "SELECT * FROM captured_items"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        conn = self._connect()
        try:
            rows = conn.execute(sql, params).fetchall()
            return [self._item_from_row(conn, row) for row in rows]
        finally:
            conn.close()

    def count_items(self, collection_id: str) -> int:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT COUNT(1) AS n FROM captured_items WHERE collection_id = ?",
                (collection_id,),
            ).fetchone()
            return int(row["n"])
        finally:
            conn.close()

    def edit_item(self, item_id: str, **changes: Any) -> CapturedItem:
        """Apply a local edit.

        Bumps ``local_revision`` and ``updated_at``; a synced or failed item
        becomes pending again, an item mid-upload stays ``syncing`` and is
        re-queued by the outbox when its upload finishes.

        Raises:
            NotFound: If the item does not exist
            ValueError: If a field is not editable
        """
        unknown = set(changes) - _ITEM_EDITABLE
        if unknown:
            raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")
        self._edit("captures", item_id, changes)
        return self.require_item(item_id)

    def delete_item(self, item_id: str) -> Optional[CapturedItem]:
        """Delete an item and its voice clip row; returns what was removed."""
        conn = self._connect()
        try:
            with conn:
                row = conn.execute("SELECT * FROM captured_items WHERE id = ?", (item_id,)).fetchone()
                if row is None:
                    return None
                item = self._item_from_row(conn, row)
                conn.execute("DELETE FROM captured_items WHERE id = ?", (item_id,))
            return item
        finally:
            conn.close()

    def apply_remote_item(self, item: CapturedItem) -> ApplyResult:
        """Create or overwrite an item from a remote record (last-writer-wins).

        The overwrite is a single conditional UPDATE, so an existing row is
        only replaced when the incoming ``updated_at`` is strictly newer.
        """
        params = (
            item.owner_id,
            item.image_file,
            item.thumbnail_file,
            item.video_file,
            item.collection_id,
            item.caption,
            item.visibility,
            format_timestamp(item.created_at),
            format_timestamp(item.updated_at),
        )
        conn = self._connect()
        try:
            with conn:
                exists = conn.execute("SELECT 1 FROM captured_items WHERE id = ?", (item.id,)).fetchone()
                if exists is None:
                    conn.execute(
                        """
                        INSERT INTO captured_items(
                          owner_id, image_file, thumbnail_file, video_file, collection_id,
                          caption, visibility, created_at, updated_at, id, sync_state
                        )
                        VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        params + (item.id, SyncState.SYNCED.value),
                    )
                    result: ApplyResult = "created"
                else:
                    cur = conn.execute(
                        """
                        UPDATE captured_items SET
                          owner_id = ?, image_file = ?, thumbnail_file = ?, video_file = ?,
                          collection_id = ?, caption = ?, visibility = ?, created_at = ?,
                          updated_at = ?, sync_state = ?, sync_attempts = 0,
                          next_attempt_at = NULL, last_error = NULL
                        WHERE id = ? AND updated_at < ?
                        """,
                        params + (SyncState.SYNCED.value, item.id, format_timestamp(item.updated_at)),
                    )
                    result = "updated" if cur.rowcount else "unchanged"

                if result != "unchanged":
                    if item.voice is not None:
                        self._write_voice(conn, item.voice)
                    else:
                        conn.execute("DELETE FROM voice_clips WHERE item_id = ?", (item.id,))
            return result
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    def insert_collection(self, collection: Collection) -> Collection:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO collections(
                      id, owner_id, name, description, cover_file, created_at, updated_at,
                      sync_state, local_revision, sync_attempts, next_attempt_at, last_error
                    )
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        collection.id,
                        collection.owner_id,
                        collection.name,
                        collection.description,
                        collection.cover_file,
                        format_timestamp(collection.created_at),
                        format_timestamp(collection.updated_at),
                        collection.sync_state.value,
                        collection.local_revision,
                        collection.sync_attempts,
                        _ts(collection.next_attempt_at),
                        collection.last_error,
                    ),
                )
        finally:
            conn.close()
        return collection

    def get_collection(self, collection_id: str) -> Optional[Collection]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM collections WHERE id = ?", (collection_id,)).fetchone()
            return self._collection_from_row(row) if row is not None else None
        finally:
            conn.close()

    def require_collection(self, collection_id: str) -> Collection:
        collection = self.get_collection(collection_id)
        if collection is None:
            raise NotFound(f"Unknown collection: {collection_id}")
        return collection

    def list_collections(self, *, states: Optional[list[SyncState]] = None) -> list[Collection]:
        sql = "SELECT * FROM collections"
        params: list[Any] = []
        if states:
            sql += f" WHERE sync_state IN ({', '.join('?' for _ in states)})"
            params.extend(s.value for s in states)
        sql += " ORDER BY updated_at DESC"
        conn = self._connect()
        try:
            return [self._collection_from_row(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def edit_collection(self, collection_id: str, **changes: Any) -> Collection:
        """Apply a local edit to a collection; same state rules as ``edit_item``."""
        unknown = set(changes) - _COLLECTION_EDITABLE
        if unknown:
            raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")
        self._edit("collections", collection_id, changes)
        return self.require_collection(collection_id)

    def delete_collection(self, collection_id: str) -> Optional[Collection]:
        """Delete a collection and detach its items; returns what was removed."""
        conn = self._connect()
        try:
            with conn:
                row = conn.execute("SELECT * FROM collections WHERE id = ?", (collection_id,)).fetchone()
                if row is None:
                    return None
                collection = self._collection_from_row(row)
                conn.execute(
                    "UPDATE captured_items SET collection_id = NULL WHERE collection_id = ?",
                    (collection_id,),
                )
                conn.execute("DELETE FROM collections WHERE id = ?", (collection_id,))
            return collection
        finally:
            conn.close()

    def apply_remote_collection(self, collection: Collection) -> ApplyResult:
        """Create or overwrite a collection from a remote record (last-writer-wins)."""
        params = (
            collection.owner_id,
            collection.name,
            collection.description,
            collection.cover_file,
            format_timestamp(collection.created_at),
            format_timestamp(collection.updated_at),
        )
        conn = self._connect()
        try:
            with conn:
                exists = conn.execute("SELECT 1 FROM collections WHERE id = ?", (collection.id,)).fetchone()
                if exists is None:
                    conn.execute(
                        """
                        INSERT INTO collections(
                          owner_id, name, description, cover_file, created_at, updated_at,
                          id, sync_state
                        )
                        VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        params + (collection.id, SyncState.SYNCED.value),
                    )
                    return "created"
                cur = conn.execute(
                    """
                    UPDATE collections SET
                      owner_id = ?, name = ?, description = ?, cover_file = ?,
                      created_at = ?, updated_at = ?, sync_state = ?, sync_attempts = 0,
                      next_attempt_at = NULL, last_error = NULL
                    WHERE id = ? AND updated_at < ?
                    """,
                    params + (SyncState.SYNCED.value, collection.id, format_timestamp(collection.updated_at)),
                )
                return "updated" if cur.rowcount else "unchanged"
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Shared edit / sync-state transitions
    # ------------------------------------------------------------------

    def _edit(self, entity_type: str, entity_id: str, changes: dict[str, Any]) -> None:
        table = _table(entity_type)
        conn = self._connect()
        try:
            with conn:
                row = conn.execute(
                    f"SELECT updated_at, sync_state FROM {table} WHERE id = ?", (entity_id,)
                ).fetchone()
                if row is None:
                    raise NotFound(f"Unknown {entity_type} entity: {entity_id}")
                updated_at = next_timestamp(parse_timestamp(row["updated_at"]))
                state = row["sync_state"]
                if state != SyncState.SYNCING.value:
                    state = SyncState.PENDING.value

                assignments = [f"{column} = ?" for column in changes]
                params = list(changes.values())
                assignments += [
                    "updated_at = ?",
                    "sync_state = ?",
                    "local_revision = local_revision + 1",
                    "next_attempt_at = NULL",
                ]
                params += [format_timestamp(updated_at), state, entity_id]
                conn.execute(f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ?", params)
        finally:
            conn.close()

    def list_due(self, entity_type: str, now: Optional[datetime] = None) -> list[str]:
        """IDs of pending/failed entities whose retry backoff has elapsed, oldest first.

        Pass ``now=None`` to ignore backoff.
        """
        table = _table(entity_type)
        sql = f"SELECT id FROM {table} WHERE sync_state IN (?, ?)"
        params: list[Any] = [SyncState.PENDING.value, SyncState.FAILED.value]
        if now is not None:
            sql += " AND (next_attempt_at IS NULL OR next_attempt_at <= ?)"
            params.append(format_timestamp(now))
        sql += " ORDER BY created_at ASC"
        conn = self._connect()
        try:
            return [str(row["id"]) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def mark_syncing(self, entity_type: str, entity_id: str) -> int:
        """Persist ``syncing`` and return the local revision being uploaded."""
        table = _table(entity_type)
        conn = self._connect()
        try:
            with conn:
                row = conn.execute(f"SELECT local_revision FROM {table} WHERE id = ?", (entity_id,)).fetchone()
                if row is None:
                    raise NotFound(f"Unknown {entity_type} entity: {entity_id}")
                conn.execute(
                    f"UPDATE {table} SET sync_state = ? WHERE id = ?",
                    (SyncState.SYNCING.value, entity_id),
                )
            return int(row["local_revision"])
        finally:
            conn.close()

    def mark_synced(self, entity_type: str, entity_id: str, revision: int, owner_id: str) -> SyncState:
        """Finish a successful upload.

        The entity becomes ``synced`` only if no local edit happened since
        ``revision`` was snapshotted; otherwise it goes back to ``pending``.
        """
        table = _table(entity_type)
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    f"""
                    UPDATE {table} SET
                      sync_state = CASE WHEN local_revision = ? THEN ? ELSE ? END,
                      owner_id = ?, sync_attempts = 0, next_attempt_at = NULL, last_error = NULL
                    WHERE id = ?
                    """,
                    (revision, SyncState.SYNCED.value, SyncState.PENDING.value, owner_id, entity_id),
                )
                row = conn.execute(f"SELECT sync_state FROM {table} WHERE id = ?", (entity_id,)).fetchone()
            if row is None:
                raise NotFound(f"Unknown {entity_type} entity: {entity_id}")
            return SyncState(row["sync_state"])
        finally:
            conn.close()

    def mark_failed(self, entity_type: str, entity_id: str, error: str, next_attempt_at: datetime) -> int:
        """Record a failed upload; returns the new attempt count."""
        table = _table(entity_type)
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    f"""
                    UPDATE {table} SET
                      sync_state = ?, sync_attempts = sync_attempts + 1,
                      next_attempt_at = ?, last_error = ?
                    WHERE id = ?
                    """,
                    (SyncState.FAILED.value, format_timestamp(next_attempt_at), error, entity_id),
                )
                row = conn.execute(f"SELECT sync_attempts FROM {table} WHERE id = ?", (entity_id,)).fetchone()
            return int(row["sync_attempts"]) if row is not None else 0
        finally:
            conn.close()

    def mark_pending(self, entity_type: str, entity_id: str, reason: Optional[str] = None) -> None:
        """Put an entity back in the queue (no attempt counted)."""
        table = _table(entity_type)
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    f"UPDATE {table} SET sync_state = ?, next_attempt_at = NULL, last_error = ? WHERE id = ?",
                    (SyncState.PENDING.value, reason, entity_id),
                )
        finally:
            conn.close()

    def reset_failed(self, entity_type: str) -> list[str]:
        """Move every failed entity of a type back to pending; returns their IDs."""
        table = _table(entity_type)
        conn = self._connect()
        try:
            with conn:
                ids = [
                    str(row["id"])
                    for row in conn.execute(
                        f"SELECT id FROM {table} WHERE sync_state = ?", (SyncState.FAILED.value,)
                    ).fetchall()
                ]
                conn.execute(
                    f"UPDATE {table} SET sync_state = ?, sync_attempts = 0, next_attempt_at = NULL "
                    "WHERE sync_state = ?",
                    (SyncState.PENDING.value, SyncState.FAILED.value),
                )
            return ids
        finally:
            conn.close()

    def count_by_state(self) -> dict[str, dict[str, int]]:
        conn = self._connect()
        try:
            counts: dict[str, dict[str, int]] = {}
            for entity_type, table in _TABLES.items():
                counts[entity_type] = {state.value: 0 for state in SyncState}
                for row in conn.execute(
                    f"SELECT sync_state, COUNT(1) AS n FROM {table} GROUP BY sync_state"
                ).fetchall():
                    counts[entity_type][row["sync_state"]] = int(row["n"])
            return counts
        finally:
            conn.close()

    def pending_count(self) -> int:
        """Entities not yet confirmed remotely, plus queued remote deletions."""
        counts = self.count_by_state()
        total = sum(
            n for per_type in counts.values() for state, n in per_type.items() if state != SyncState.SYNCED.value
        )
        return total + len(self.list_pending_deletes())

    # ------------------------------------------------------------------
    # Pull checkpoints
    # ------------------------------------------------------------------

    def get_checkpoint(self, entity_type: str) -> Optional[datetime]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT last_pulled_at FROM sync_checkpoints WHERE entity_type = ?", (entity_type,)
            ).fetchone()
            return parse_timestamp(row["last_pulled_at"]) if row is not None else None
        finally:
            conn.close()

    def advance_checkpoint(self, entity_type: str, value: datetime) -> datetime:
        """Move the checkpoint forward; an older value leaves it untouched."""
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO sync_checkpoints(entity_type, last_pulled_at) VALUES(?, ?)
                    ON CONFLICT(entity_type) DO UPDATE SET last_pulled_at = excluded.last_pulled_at
                    WHERE excluded.last_pulled_at > sync_checkpoints.last_pulled_at
                    """,
                    (entity_type, format_timestamp(value)),
                )
                row = conn.execute(
                    "SELECT last_pulled_at FROM sync_checkpoints WHERE entity_type = ?", (entity_type,)
                ).fetchone()
            return parse_timestamp(row["last_pulled_at"])
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Queued remote deletions
    # ------------------------------------------------------------------

    def queue_delete(
        self,
        entity_type: str,
        entity_id: str,
        owner_id: Optional[str],
        object_paths: dict[str, list[str]],
    ) -> None:
        """Remember that a synced entity must also be removed remotely.

        ``object_paths`` maps bucket name to storage paths to remove.
        """
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO pending_deletes(entity_type, entity_id, owner_id, object_paths_json, queued_at)
                    VALUES(?, ?, ?, ?, ?)
                    ON CONFLICT(entity_type, entity_id) DO NOTHING
                    """,
                    (entity_type, entity_id, owner_id, json.dumps(object_paths, sort_keys=True),
                     format_timestamp(utc_now())),
                )
        finally:
            conn.close()

    def list_pending_deletes(self, now: Optional[datetime] = None) -> list[dict[str, Any]]:
        sql = "SELECT * FROM pending_deletes"
        params: list[Any] = []
        if now is not None:
            sql += " WHERE next_attempt_at IS NULL OR next_attempt_at <= ?"
            params.append(format_timestamp(now))
        sql += " ORDER BY queued_at ASC"
        conn = self._connect()
        try:
            return [
                {
                    "entity_type": row["entity_type"],
                    "entity_id": row["entity_id"],
                    "owner_id": row["owner_id"],
                    "object_paths": json.loads(row["object_paths_json"]),
                    "attempts": int(row["attempts"]),
                    "last_error": row["last_error"],
                }
                for row in conn.execute(sql, params).fetchall()
            ]
        finally:
            conn.close()

    def is_delete_queued(self, entity_type: str, entity_id: str) -> bool:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT 1 FROM pending_deletes WHERE entity_type = ? AND entity_id = ?",
                (entity_type, entity_id),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def complete_delete(self, entity_type: str, entity_id: str) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "DELETE FROM pending_deletes WHERE entity_type = ? AND entity_id = ?",
                    (entity_type, entity_id),
                )
        finally:
            conn.close()

    def fail_delete(self, entity_type: str, entity_id: str, error: str, next_attempt_at: datetime) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    UPDATE pending_deletes SET attempts = attempts + 1, next_attempt_at = ?, last_error = ?
                    WHERE entity_type = ? AND entity_id = ?
                    """,
                    (format_timestamp(next_attempt_at), error, entity_type, entity_id),
                )
        finally:
            conn.close()

    def iter_synced_item_ids(self) -> Iterator[str]:
        """IDs of items marked synced, oldest first."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT id FROM captured_items WHERE sync_state = ? ORDER BY created_at ASC",
                (SyncState.SYNCED.value,),
            ).fetchall()
        finally:
            conn.close()
        for row in rows:
            yield str(row["id"])
