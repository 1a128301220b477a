from __future__ import annotations

import json
from typing import Sequence

from rich.console import Console
from rich.text import Text

from ..domain.models import SinkRecord
from ..ports.storage import RowStore


class ConsoleStore(RowStore):
    """Dry-run sink: one JSON line per row, prefixed with the table name."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(soft_wrap=True)
        self.rows_written = 0

    async def upsert(self, table: str, records: Sequence[SinkRecord]) -> None:
        for r in records:
            line = json.dumps(r.as_row(), separators=(",", ":"), default=str)
            self.console.print(Text.assemble((table, "bold cyan"), " ", line), highlight=False, soft_wrap=True)
        self.rows_written += len(records)

    async def check(self, tables: Sequence[str]) -> None:
        return None

    async def aclose(self) -> None:
        return None
