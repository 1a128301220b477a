"""Tests for the SQLite row and cursor store."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

import pytest

from factories import tx
from logtide.adapters.sqlite_sink import SqliteStore
from logtide.domain.errors import SinkWriteError
from logtide.domain.models import IngestionCursor, SinkRecord


def _rows(n: int, amount: str = "1") -> list[SinkRecord]:
    return [SinkRecord(tx(i), i % 2, {"block_number": 100 + i, "amount": amount}) for i in range(n)]


@pytest.fixture
def store(tmp_path):
    s = SqliteStore(str(tmp_path / "events.db"))
    yield s
    s.conn.close()


@pytest.mark.asyncio
async def test_upsert_is_idempotent(store: SqliteStore) -> None:
    batch = _rows(5)
    await store.upsert("transfer_events", batch)
    first = store.rows("transfer_events")
    await store.upsert("transfer_events", batch)

    assert store.rows("transfer_events") == first
    assert len(first) == 5


@pytest.mark.asyncio
async def test_conflict_overwrites_existing_row(store: SqliteStore) -> None:
    await store.upsert("t", _rows(2, amount="1"))
    await store.upsert("t", _rows(1, amount="999"))

    rows = store.rows("t")
    assert len(rows) == 2
    assert rows[0]["amount"] == "999"
    assert rows[1]["amount"] == "1"


@pytest.mark.asyncio
async def test_new_columns_are_added(store: SqliteStore) -> None:
    await store.upsert("t", _rows(1))
    await store.upsert("t", [SinkRecord(tx(9), 0, {"block_number": 1, "extra": "x"})])

    rows = {r["transaction_hash"]: r for r in store.rows("t")}
    assert rows[tx(9)]["extra"] == "x"
    assert rows[tx(0)]["extra"] is None


@pytest.mark.asyncio
async def test_bad_identifiers_are_rejected(store: SqliteStore) -> None:
    with pytest.raises(SinkWriteError):
        await store.upsert("t; drop table x", _rows(1))


@pytest.mark.asyncio
async def test_cursor_roundtrip(store: SqliteStore) -> None:
    assert await store.load("last-tap") is None
    ts = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)

    await store.save("last-tap", IngestionCursor(100, "https://a.example", ts))
    await store.save("last-tap", IngestionCursor(250, "https://b.example", ts))
    await store.save("other", IngestionCursor(7, None, None))

    assert await store.load("last-tap") == IngestionCursor(250, "https://b.example", ts)
    assert await store.load("other") == IngestionCursor(7, None, None)
    await store.check(["t"])


class CommitFailsOnce:
    """Connection wrapper whose first COMMIT fails the way a busy WAL database does."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self.failed = False

    def execute(self, sql: str, *args):
        if sql == "COMMIT" and not self.failed:
            self.failed = True
            raise sqlite3.OperationalError("database is locked")
        return self._conn.execute(sql, *args)

    def __getattr__(self, name: str):
        return getattr(self._conn, name)


@pytest.mark.asyncio
async def test_failed_commit_rolls_back_and_next_batch_succeeds(store: SqliteStore) -> None:
    store.conn = CommitFailsOnce(store.conn)

    with pytest.raises(SinkWriteError, match="database is locked"):
        await store.upsert("t", _rows(2))
    assert not store.conn.in_transaction
    assert store.rows("t") == []

    await store.upsert("t", _rows(3))
    assert len(store.rows("t")) == 3
