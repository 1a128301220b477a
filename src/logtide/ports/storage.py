# logtide/ports/storage.py
from __future__ import annotations

from typing import Protocol, Sequence

from ..domain.models import IngestionCursor, SinkRecord


class RowStore(Protocol):
    """Port for upserting flat rows keyed by (transaction_hash, log_index)."""

    async def upsert(self, table: str, records: Sequence[SinkRecord]) -> None:
        """Insert or overwrite every record in one call. Raises SinkWriteError."""

    async def check(self, tables: Sequence[str]) -> None:
        """Verify connectivity/permissions before ingestion starts. Raises SinkWriteError."""

    async def aclose(self) -> None:
        """Release connections."""


class CursorStore(Protocol):
    """Port for persisting the ingestion cursor across restarts."""

    async def load(self, key: str) -> IngestionCursor | None:
        """Return the last saved cursor for `key`, or None if nothing was saved."""

    async def save(self, key: str, cursor: IngestionCursor) -> None:
        """Persist `cursor` under `key`, replacing any previous value."""
