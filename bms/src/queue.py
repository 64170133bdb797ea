"""
Durable FIFO of raw telemetry samples, backed by async SQLite.

Sensors (or an ingest endpoint) enqueue raw payloads; the ingestion pipeline
is the single consumer. A sample stays in the queue until the pipeline
deletes it after committing the processed result, so a crash never loses a
sample that has not been applied.

Ordering is global across batteries: the oldest sample by measurement
timestamp is consumed first, ties broken by arrival order. Payloads whose
timestamp cannot be parsed sort first so they are dropped promptly.

Operations:
- enqueue(payload): INSERT a raw payload, returning its id.
- peek_oldest(): SELECT the oldest pending (id, payload) without removing it.
- delete(raw_id): DELETE one consumed sample.
- count(): SELECT COUNT(*) of pending samples.
- queue_id: random identity generated when the queue file is created.
- close(): Close the underlying database connection.

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-10-18: Persist a queue identity for the duplicate guard (STORY-011)
- 2026-10-18: Order by measurement timestamp instead of arrival (STORY-011)
- 2026-10-18: Initial creation (STORY-011)

TODO:
- None
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import aiosqlite

from bms.src.normalizer import decode_payload, parse_timestamp

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS raw_samples (
    rowid INTEGER PRIMARY KEY AUTOINCREMENT,
    payload TEXT NOT NULL,
    ts_ms REAL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_CREATE_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS ix_raw_samples_order ON raw_samples (ts_ms, rowid);
"""

_INSERT_SQL = """\
INSERT INTO raw_samples (payload, ts_ms) VALUES (?, ?);
"""

_PEEK_OLDEST_SQL = """\
SELECT rowid, payload
FROM raw_samples
ORDER BY ts_ms ASC, rowid ASC
LIMIT 1;
"""

_DELETE_SQL = "DELETE FROM raw_samples WHERE rowid = ?;"

_COUNT_SQL = "SELECT COUNT(*) FROM raw_samples;"

_CREATE_META_SQL = """\
CREATE TABLE IF NOT EXISTS queue_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_INIT_QUEUE_ID_SQL = "INSERT OR IGNORE INTO queue_meta (key, value) VALUES ('queue_id', ?);"

_SELECT_QUEUE_ID_SQL = "SELECT value FROM queue_meta WHERE key = 'queue_id';"


def _ordering_key(payload: str | Mapping[str, Any]) -> float | None:
    """Epoch milliseconds of the payload's timestamp, or None if unparseable."""
    data = decode_payload(payload)
    if data is None:
        return None
    ts = parse_timestamp(data.get("timestamp"))
    return ts.timestamp() * 1000.0 if ts is not None else None


class RawQueue:
    """Durable async FIFO of raw telemetry payloads.

    Payloads are stored as opaque JSON text; the pipeline normalizes them
    after :meth:`peek_oldest`. Uses WAL journal mode so producers can
    enqueue while the pipeline reads.

    Args:
        path: Filesystem path for the SQLite database file.
              Accepts ``str`` or ``pathlib.Path``.

    Usage::

        async with RawQueue(path="/data/raw_queue.db") as queue:
            await queue.enqueue({"batteryId": "B1", "timestamp": "...",
                                 "voltage_V": 12.4, "current_A": -2.0})
            oldest = await queue.peek_oldest()
            if oldest is not None:
                await queue.delete(oldest[0])
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None
        self._queue_id: str | None = None

    @property
    def queue_id(self) -> str:
        """Identity of this queue file, stable across reopen.

        Queue ids (rowids) are only unique within one queue file; processed
        readings are keyed on ``(queue_id, raw_id)``.
        """
        assert self._queue_id is not None, "RawQueue not opened. Call open() or use async with."
        return self._queue_id

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema."""
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.execute(_CREATE_INDEX_SQL)
        await self._db.execute(_CREATE_META_SQL)
        await self._db.execute(_INIT_QUEUE_ID_SQL, (uuid.uuid4().hex,))
        await self._db.commit()
        cursor = await self._db.execute(_SELECT_QUEUE_ID_SQL)
        row = await cursor.fetchone()
        self._queue_id = row[0]

    async def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> RawQueue:
        """Enter async context manager: open the database."""
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit async context manager: close the database."""
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enqueue(self, payload: str | Mapping[str, Any]) -> int:
        """Insert a raw payload and return its queue id.

        Mappings are serialized to JSON (datetimes via ``str``). Strings are
        stored as-is, even when they are not valid JSON; the pipeline drops
        those on consumption.

        Args:
            payload: JSON string or mapping to store.

        Returns:
            The id assigned to the stored payload.
        """
        assert self._db is not None, "RawQueue not opened. Call open() or use async with."
        if isinstance(payload, Mapping):
            text = json.dumps(dict(payload), default=str)
        else:
            text = payload
        cursor = await self._db.execute(_INSERT_SQL, (text, _ordering_key(payload)))
        await self._db.commit()
        return cursor.lastrowid

    async def peek_oldest(self) -> tuple[int, str] | None:
        """Return the oldest pending ``(id, payload)`` without removing it.

        Returns:
            The oldest row, or ``None`` when the queue is empty.
        """
        assert self._db is not None, "RawQueue not opened. Call open() or use async with."
        cursor = await self._db.execute(_PEEK_OLDEST_SQL)
        row = await cursor.fetchone()
        if row is None:
            return None
        return row[0], row[1]

    async def delete(self, raw_id: int) -> None:
        """Delete a consumed sample. Unknown ids are silently ignored."""
        assert self._db is not None, "RawQueue not opened. Call open() or use async with."
        await self._db.execute(_DELETE_SQL, (raw_id,))
        await self._db.commit()

    async def count(self) -> int:
        """Return the number of pending samples."""
        assert self._db is not None, "RawQueue not opened. Call open() or use async with."
        cursor = await self._db.execute(_COUNT_SQL)
        row = await cursor.fetchone()
        return row[0]
