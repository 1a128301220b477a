from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Sequence

from loguru import logger

from ..domain.errors import SinkWriteError
from ..domain.models import SinkRecord, UpsertResult
from ..ports.storage import RowStore
from .status import StatusState


class BatchSinkWriter:
    """
    All-or-nothing batch upserts with a bounded retry budget. After `max_attempts` failed
    calls the batch is reported as dropped; it is never split or re-queued.
    """

    def __init__(
        self,
        store: RowStore,
        *,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        status: StatusState | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.status = status
        self._sleep = sleep

    async def upsert(self, table: str, records: Sequence[SinkRecord]) -> UpsertResult:
        if not records:
            return UpsertResult(table, 0, True, 0)

        # last occurrence of a natural key wins
        rows = list({r.natural_key: r for r in records}.values())
        log = logger.bind(table=table)
        err: SinkWriteError | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.store.upsert(table, rows)
            except SinkWriteError as e:
                err = e
                if attempt < self.max_attempts:
                    delay = self.base_delay * 2 ** (attempt - 1)
                    log.warning(f"Upsert of {len(rows)} rows into {table} failed (attempt {attempt}/{self.max_attempts}): {e}; retrying in {delay:.2f}s")
                    await self._sleep(delay)
                continue
            result = UpsertResult(table, len(rows), True, attempt)
            break
        else:
            log.error(f"Dropping batch of {len(rows)} rows for {table} after {self.max_attempts} attempts: {err}")
            result = UpsertResult(table, len(rows), False, self.max_attempts, str(err))

        if self.status is not None:
            self.status.record_upsert(result)
        return result
