"""
Unit tests for the async SQLite record sink (Spool).

Tests verify:
- The database is created in WAL mode, parent directories included.
- enqueue_many() stores serialized records with their measurement.
- peek(n) returns up to n oldest rows, FIFO; ack() deletes only given rows.
- Stored payloads keep the field presentation order.
- Rows persist across close/reopen.

CHANGELOG:
- 2026-03-10: Append through enqueue_many() only
- 2026-03-02: Initial creation (STORY-111)

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite
import pytest
from harvester.src.models import NormalizedRecord
from harvester.src.spool import Spool

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _record(
    name: str = "INV-01", measurement: str = "inverter", **fields: float
) -> NormalizedRecord:
    """Return a small record for spool tests."""
    return NormalizedRecord(
        ts=datetime(2026, 3, 2, 10, 0, 0, tzinfo=UTC),
        site_name="Shundao 1",
        name=name,
        measurement=measurement,
        fields=fields or {"p_out_kw": 34.5},
    )


class TestSpoolCreation:
    """Database file and pragmas."""

    @pytest.mark.asyncio
    async def test_creates_db_in_wal_mode(self, tmp_path: Path) -> None:
        """The database file exists and uses WAL journaling."""
        path = tmp_path / "nested" / "spool.db"

        async with Spool(path):
            pass

        assert path.exists()
        async with aiosqlite.connect(path) as db:
            cursor = await db.execute("PRAGMA journal_mode;")
            row = await cursor.fetchone()
        assert row[0] == "wal"

    @pytest.mark.asyncio
    async def test_empty_spool(self, tmp_path: Path) -> None:
        """A fresh spool holds no rows."""
        async with Spool(tmp_path / "spool.db") as spool:
            assert await spool.count() == 0
            assert await spool.peek(10) == []


class TestEnqueuePeekAck:
    """FIFO append, read and delete."""

    @pytest.mark.asyncio
    async def test_batches_peek_fifo(self, tmp_path: Path) -> None:
        """Rows come back oldest first with their JSON payload."""
        async with Spool(tmp_path / "spool.db") as spool:
            await spool.enqueue_many([_record("A")])
            await spool.enqueue_many([_record("B")])

            rows = await spool.peek(10)

        assert [json.loads(payload)["name"] for _, payload in rows] == ["A", "B"]
        assert rows[0][0] < rows[1][0]

    @pytest.mark.asyncio
    async def test_enqueue_many_returns_count(self, tmp_path: Path) -> None:
        """enqueue_many() writes every record and reports how many."""
        async with Spool(tmp_path / "spool.db") as spool:
            written = await spool.enqueue_many([_record(str(i)) for i in range(5)])

            assert written == 5
            assert await spool.count() == 5

    @pytest.mark.asyncio
    async def test_enqueue_many_empty(self, tmp_path: Path) -> None:
        """An empty iterable writes nothing."""
        async with Spool(tmp_path / "spool.db") as spool:
            assert await spool.enqueue_many([]) == 0

    @pytest.mark.asyncio
    async def test_peek_respects_limit(self, tmp_path: Path) -> None:
        """peek(n) returns at most n rows; n < 1 returns none."""
        async with Spool(tmp_path / "spool.db") as spool:
            await spool.enqueue_many([_record(str(i)) for i in range(5)])

            assert len(await spool.peek(3)) == 3
            assert await spool.peek(0) == []

    @pytest.mark.asyncio
    async def test_ack_deletes_only_given_rows(self, tmp_path: Path) -> None:
        """Acked rows disappear; the rest stay in order."""
        async with Spool(tmp_path / "spool.db") as spool:
            await spool.enqueue_many([_record(str(i)) for i in range(4)])
            rows = await spool.peek(4)

            await spool.ack([rows[0][0], rows[2][0], 9999])

            remaining = await spool.peek(10)
        assert [json.loads(p)["name"] for _, p in remaining] == ["1", "3"]

    @pytest.mark.asyncio
    async def test_ack_empty_list_noop(self, tmp_path: Path) -> None:
        """Acking nothing leaves the spool unchanged."""
        async with Spool(tmp_path / "spool.db") as spool:
            await spool.enqueue_many([_record()])
            await spool.ack([])
            assert await spool.count() == 1

    @pytest.mark.asyncio
    async def test_measurement_column_stored(self, tmp_path: Path) -> None:
        """The measurement is stored beside the payload."""
        path = tmp_path / "spool.db"
        async with Spool(path) as spool:
            await spool.enqueue_many([_record(measurement="meter")])

        async with aiosqlite.connect(path) as db:
            cursor = await db.execute("SELECT measurement FROM records;")
            rows = await cursor.fetchall()
        assert [r[0] for r in rows] == ["meter"]

    @pytest.mark.asyncio
    async def test_payload_keeps_field_order(self, tmp_path: Path) -> None:
        """Serialized fields follow presentation order."""
        record = _record(pv01_amp_a=1.0, pv01_volt_v=600.0, p_out_kw=2.0)
        async with Spool(tmp_path / "spool.db") as spool:
            await spool.enqueue_many([record])
            (_, payload), = await spool.peek(1)

        assert list(json.loads(payload)["fields"]) == ["p_out_kw", "pv01_volt_v", "pv01_amp_a"]


class TestSpoolPersistence:
    """Durability across reopen."""

    @pytest.mark.asyncio
    async def test_rows_survive_reopen(self, tmp_path: Path) -> None:
        """Rows written before close are readable after reopen."""
        path = tmp_path / "spool.db"
        async with Spool(path) as spool:
            await spool.enqueue_many([_record("A"), _record("B")])

        async with Spool(path) as spool:
            assert await spool.count() == 2

    @pytest.mark.asyncio
    async def test_unopened_spool_asserts(self, tmp_path: Path) -> None:
        """Using the spool before open() fails loudly."""
        spool = Spool(tmp_path / "spool.db")
        with pytest.raises(AssertionError, match="not opened"):
            await spool.count()
