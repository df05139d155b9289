"""
Local record sink using async SQLite.

Each normalized record is serialized to JSON (fields in presentation
order) and appended to a SQLite file in WAL mode. Downstream consumers
(time-series push, dashboards) read the oldest rows with ``peek`` and
delete what they have handled with ``ack``. Delivery is at-least-once at
best; nothing here guarantees exactly-once.

Operations:
- enqueue_many(records): INSERT a cycle's records in one transaction.
- peek(n): SELECT up to n oldest rows with their rowids (FIFO).
- ack(rowids): DELETE only the specified rows.
- count(): SELECT COUNT(*) of pending rows.
- close(): Close the underlying database connection.

CHANGELOG:
- 2026-03-10: Drop single-record enqueue; cycles append in one transaction
- 2026-03-06: Store measurement per row for consumer-side filtering
- 2026-03-02: Initial creation (STORY-111)

TODO:
- None
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

import aiosqlite

from harvester.src.models import NormalizedRecord

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS records (
    rowid INTEGER PRIMARY KEY AUTOINCREMENT,
    measurement TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_INSERT_SQL = """\
INSERT INTO records (measurement, payload) VALUES (?, ?);
"""

_PEEK_SQL = """\
SELECT rowid, payload
FROM records
ORDER BY rowid ASC
LIMIT ?;
"""

_COUNT_SQL = "SELECT COUNT(*) FROM records;"


def _serialize(record: NormalizedRecord) -> tuple[str, str]:
    return record.measurement, record.model_dump_json()


class Spool:
    """Append-only async FIFO of normalized records backed by SQLite.

    Args:
        path: Filesystem path for the SQLite database file.

    Usage::

        async with Spool(path="/data/spool.db") as spool:
            await spool.enqueue_many(records)
            rows = await spool.peek(100)
            await spool.ack([rowid for rowid, _ in rows])
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the SQLite connection in WAL mode and create the table."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> Spool:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enqueue_many(self, records: Iterable[NormalizedRecord]) -> int:
        """Append several records in a single transaction.

        Returns:
            Number of records written.
        """
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        rows = [_serialize(record) for record in records]
        if not rows:
            return 0
        await self._db.executemany(_INSERT_SQL, rows)
        await self._db.commit()
        return len(rows)

    async def peek(self, n: int) -> list[tuple[int, str]]:
        """Return up to *n* oldest ``(rowid, payload_json)`` rows, FIFO.

        Returns an empty list when the spool is empty or n < 1.
        """
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        if n < 1:
            return []
        cursor = await self._db.execute(_PEEK_SQL, (n,))
        rows = await cursor.fetchall()
        return [(row[0], row[1]) for row in rows]

    async def ack(self, rowids: list[int]) -> None:
        """Delete the rows whose rowid is in *rowids*; unknown ids are ignored."""
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        if not rowids:
            return
        placeholders = ",".join("?" for _ in rowids)
        sql = f"DELETE FROM records WHERE rowid IN ({placeholders});"  # noqa: S608
        await self._db.execute(sql, rowids)
        await self._db.commit()

    async def count(self) -> int:
        """Return the number of pending rows."""
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        cursor = await self._db.execute(_COUNT_SQL)
        row = await cursor.fetchone()
        return row[0]
