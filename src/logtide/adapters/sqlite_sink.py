from __future__ import annotations

import asyncio
import re
import sqlite3
from datetime import datetime
from typing import Any, Sequence

from ..domain.errors import SinkWriteError
from ..domain.models import IngestionCursor, SinkRecord
from ..ports.storage import CursorStore, RowStore

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_INT_COLS = {"block_number": "INTEGER", "log_index": "INTEGER"}


def _ident(name: str) -> str:
    if not _IDENT.match(name):
        raise SinkWriteError(f"invalid SQL identifier {name!r}", table=name)
    return f'"{name}"'


class SqliteStore(RowStore, CursorStore):
    """
    Local SQLite sink. Tables are created on first write with a composite primary key
    on (transaction_hash, log_index); new columns are added as rows introduce them.
    """

    def __init__(self, path: str, *, checkpoint_table: str = "ingestion_checkpoints") -> None:
        self.path = path
        self.checkpoint_table = checkpoint_table
        self.conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute(
            f"CREATE TABLE IF NOT EXISTS {_ident(checkpoint_table)} ("
            "pipeline TEXT PRIMARY KEY, next_block INTEGER NOT NULL, endpoint TEXT, updated_at TEXT)"
        )
        self._columns: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    # ---- sync helpers (run in a worker thread) ----

    def _ensure_table(self, table: str, cols: Sequence[str]) -> None:
        known = self._columns.get(table)
        if known is None:
            defs = [f"{_ident(c)} {_INT_COLS.get(c, 'TEXT')}" for c in cols]
            self.conn.execute(
                f"CREATE TABLE IF NOT EXISTS {_ident(table)} ({', '.join(defs)}, "
                "PRIMARY KEY (transaction_hash, log_index))"
            )
            known = {row[1] for row in self.conn.execute(f"PRAGMA table_info({_ident(table)})")}
            self._columns[table] = known
        for c in cols:
            if c not in known:
                self.conn.execute(f"ALTER TABLE {_ident(table)} ADD COLUMN {_ident(c)} {_INT_COLS.get(c, 'TEXT')}")
                known.add(c)

    def _upsert_sync(self, table: str, rows: list[dict[str, Any]]) -> None:
        cols = list(dict.fromkeys(c for row in rows for c in row))
        self._ensure_table(table, cols)
        updates = [c for c in cols if c not in ("transaction_hash", "log_index")]
        sql = (
            f"INSERT INTO {_ident(table)} ({', '.join(_ident(c) for c in cols)}) "
            f"VALUES ({', '.join('?' for _ in cols)}) "
            "ON CONFLICT(transaction_hash, log_index) DO "
            + (f"UPDATE SET {', '.join(f'{_ident(c)}=excluded.{_ident(c)}' for c in updates)}" if updates else "NOTHING")
        )
        self.conn.execute("BEGIN")
        try:
            self.conn.executemany(sql, [tuple(row.get(c) for c in cols) for row in rows])
            self.conn.execute("COMMIT")
        except BaseException:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise

    # ---- RowStore ----

    async def upsert(self, table: str, records: Sequence[SinkRecord]) -> None:
        if not records:
            return
        rows = [r.as_row() for r in records]
        async with self._lock:
            try:
                await asyncio.to_thread(self._upsert_sync, table, rows)
            except sqlite3.Error as e:
                raise SinkWriteError(f"sqlite upsert into {table} failed: {e}", table=table) from e

    async def check(self, tables: Sequence[str]) -> None:
        try:
            await asyncio.to_thread(self.conn.execute, "SELECT 1")
        except sqlite3.Error as e:
            raise SinkWriteError(f"sqlite database {self.path} unusable: {e}") from e

    def rows(self, table: str) -> list[dict[str, Any]]:
        cur = self.conn.execute(f"SELECT * FROM {_ident(table)} ORDER BY block_number, log_index")
        names = [d[0] for d in cur.description]
        return [dict(zip(names, r)) for r in cur.fetchall()]

    # ---- CursorStore ----

    async def load(self, key: str) -> IngestionCursor | None:
        sql = f"SELECT next_block, endpoint, updated_at FROM {_ident(self.checkpoint_table)} WHERE pipeline=?"
        async with self._lock:
            row = await asyncio.to_thread(lambda: self.conn.execute(sql, (key,)).fetchone())
        if row is None:
            return None
        return IngestionCursor(int(row[0]), row[1], datetime.fromisoformat(row[2]) if row[2] else None)

    async def save(self, key: str, cursor: IngestionCursor) -> None:
        sql = (
            f"INSERT INTO {_ident(self.checkpoint_table)}(pipeline, next_block, endpoint, updated_at) VALUES(?,?,?,?) "
            "ON CONFLICT(pipeline) DO UPDATE SET next_block=excluded.next_block, "
            "endpoint=excluded.endpoint, updated_at=excluded.updated_at"
        )
        ts = cursor.last_advanced_at.isoformat() if cursor.last_advanced_at else None
        async with self._lock:
            try:
                await asyncio.to_thread(self.conn.execute, sql, (key, cursor.next_block, cursor.endpoint_in_use, ts))
            except sqlite3.Error as e:
                raise SinkWriteError(f"sqlite checkpoint save failed: {e}", table=self.checkpoint_table) from e

    async def aclose(self) -> None:
        self.conn.close()
