"""SQLite backed persistence for audio blobs, recordings and the upload cache."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from .models import AudioBlob, Recording, UploadCacheEntry


APP_DIR = Path.home() / ".callnote"
DB_PATH = APP_DIR / "callnote.db"
SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS blobs (
    key        TEXT PRIMARY KEY,
    data       BLOB NOT NULL,
    mime_type  TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS recordings (
    id         TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    payload    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS upload_cache (
    cache_key  TEXT PRIMARY KEY,
    blob_ref   TEXT NOT NULL,
    filename   TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    mime_type  TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS metadata (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class StorageError(RuntimeError):
    """Raised when something goes wrong while accessing the storage."""


class _Database:
    """Shared connection handling; every public call runs in one transaction."""

    def __init__(self, db_path: Path = DB_PATH) -> None:
        self.db_path = Path(db_path)
        self._ensure_initialised()

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open database {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageError(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _ensure_initialised(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._conn() as conn:
            conn.executescript(SCHEMA)
            row = conn.execute("SELECT value FROM metadata WHERE key = ?", ("schema_version",)).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO metadata(key, value) VALUES(?, ?)",
                    ("schema_version", str(SCHEMA_VERSION)),
                )


class BlobStore(_Database):
    """Key-indexed durable storage for binary audio.

    Keys are opaque strings chosen by the caller. Writes are atomic per call:
    a failed ``put`` leaves no partial record behind.
    """

    async def put(self, key: str, blob: AudioBlob) -> None:
        await asyncio.to_thread(self._put, key, blob)

    async def get(self, key: str) -> Optional[AudioBlob]:
        return await asyncio.to_thread(self._get, key)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear)

    def _put(self, key: str, blob: AudioBlob) -> None:
        with self._conn() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO blobs(key, data, mime_type, updated_at) VALUES(?, ?, ?, ?)",
                (key, sqlite3.Binary(blob.data), blob.mime_type, datetime.utcnow().isoformat()),
            )

    def _get(self, key: str) -> Optional[AudioBlob]:
        with self._conn() as conn:
            row = conn.execute("SELECT data, mime_type FROM blobs WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return AudioBlob(data=bytes(row["data"]), mime_type=row["mime_type"])

    def _delete(self, key: str) -> None:
        with self._conn() as conn:
            conn.execute("DELETE FROM blobs WHERE key = ?", (key,))

    def _clear(self) -> None:
        with self._conn() as conn:
            conn.execute("DELETE FROM blobs")


class UploadCacheIndex(_Database):
    """Metadata for blobs parked after every upload backend failed."""

    async def add(self, entry: UploadCacheEntry) -> None:
        await asyncio.to_thread(self._add, entry)

    async def get(self, cache_key: str) -> Optional[UploadCacheEntry]:
        return await asyncio.to_thread(self._get, cache_key)

    async def list(self) -> List[UploadCacheEntry]:
        return await asyncio.to_thread(self._list)

    async def remove(self, cache_key: str) -> None:
        await asyncio.to_thread(self._remove, cache_key)

    def _add(self, entry: UploadCacheEntry) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO upload_cache(cache_key, blob_ref, filename, size_bytes, mime_type, created_at)
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.cache_key,
                    entry.blob_ref,
                    entry.filename,
                    entry.size_bytes,
                    entry.mime_type,
                    entry.created_at.isoformat(),
                ),
            )

    def _get(self, cache_key: str) -> Optional[UploadCacheEntry]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM upload_cache WHERE cache_key = ?", (cache_key,)).fetchone()
        return _row_to_cache_entry(row) if row is not None else None

    def _list(self) -> List[UploadCacheEntry]:
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM upload_cache ORDER BY created_at ASC").fetchall()
        return [_row_to_cache_entry(row) for row in rows]

    def _remove(self, cache_key: str) -> None:
        with self._conn() as conn:
            conn.execute("DELETE FROM upload_cache WHERE cache_key = ?", (cache_key,))


class RecordingStore(_Database):
    """Persist recordings as JSON documents keyed by recording id."""

    async def save(self, recording: Recording) -> None:
        await asyncio.to_thread(self._save, recording)

    async def get(self, recording_id: str) -> Recording:
        return await asyncio.to_thread(self._get, recording_id)

    async def list(self) -> List[Recording]:
        return await asyncio.to_thread(self._list)

    async def delete(self, recording_id: str, blobs: Optional[BlobStore] = None) -> None:
        """Delete a recording and, when a blob store is given, purge its audio."""

        recording = await self.get(recording_id)
        await asyncio.to_thread(self._delete, recording_id)
        if blobs is not None:
            await blobs.delete(recording.audio_ref)

    def _save(self, recording: Recording) -> None:
        with self._conn() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO recordings(id, created_at, payload) VALUES(?, ?, ?)",
                (
                    recording.id,
                    recording.created_at.isoformat(),
                    json.dumps(recording.to_dict(), ensure_ascii=False),
                ),
            )

    def _get(self, recording_id: str) -> Recording:
        with self._conn() as conn:
            row = conn.execute("SELECT payload FROM recordings WHERE id = ?", (recording_id,)).fetchone()
        if row is None:
            raise StorageError(f"Recording with id {recording_id} not found")
        return Recording.from_dict(json.loads(row["payload"]))

    def _list(self) -> List[Recording]:
        with self._conn() as conn:
            rows = conn.execute("SELECT payload FROM recordings ORDER BY created_at DESC").fetchall()
        return [Recording.from_dict(json.loads(row["payload"])) for row in rows]

    def _delete(self, recording_id: str) -> None:
        with self._conn() as conn:
            conn.execute("DELETE FROM recordings WHERE id = ?", (recording_id,))


def _row_to_cache_entry(row: sqlite3.Row) -> UploadCacheEntry:
    return UploadCacheEntry(
        cache_key=row["cache_key"],
        blob_ref=row["blob_ref"],
        filename=row["filename"],
        size_bytes=row["size_bytes"],
        mime_type=row["mime_type"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )
