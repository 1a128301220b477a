from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from ..domain.models import UpsertResult
from ..domain.projections import Projection
from ..domain.value_types import IngestionState


@dataclass(slots=True, frozen=True)
class StatusSnapshot:
    state: IngestionState
    endpoint: str | None
    current_block: int | None
    chain_height: int | None
    started_at: datetime
    uptime_s: float
    events_total: int
    events_by_kind: dict[str, int]
    unknown_logs: int
    skipped_logs: int
    batches_sent: int
    rows_upserted: int
    failed_rows: int
    dropped_batches: int
    source_errors: int
    reconnects: int
    last_error: str | None
    blocks_per_s: float
    events_per_s: float
    last_events: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def blocks_behind(self) -> int | None:
        if self.current_block is None or self.chain_height is None:
            return None
        return max(0, self.chain_height - self.current_block + 1)

    def as_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["started_at"] = self.started_at.isoformat()
        d["blocks_behind"] = self.blocks_behind
        return d


class StatusState:
    """
    Process-wide counters shared by the orchestrator (writer) and the status server (reader).
    Both live on one event loop; readers only ever see copies through snapshot().
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._t0 = clock()
        self.started_at = datetime.now(timezone.utc)
        self.state: IngestionState = "CONNECTING"
        self.endpoint: str | None = None
        self.current_block: int | None = None
        self.chain_height: int | None = None
        self._first_block: int | None = None
        self.events_by_kind: dict[str, int] = {}
        self.unknown_logs = 0
        self.skipped_logs = 0
        self.batches_sent = 0
        self.rows_upserted = 0
        self.failed_rows = 0
        self.dropped_batches = 0
        self.source_errors = 0
        self.reconnects = 0
        self.last_error: str | None = None
        self.last_events: dict[str, dict[str, Any]] = {}

    @property
    def events_total(self) -> int:
        return sum(self.events_by_kind.values())

    def elapsed(self) -> float:
        return max(0.0, self._clock() - self._t0)

    def set_block(self, next_block: int) -> None:
        if self._first_block is None:
            self._first_block = next_block
        self.current_block = next_block

    def record_projection(self, p: Projection) -> None:
        for kind, n in p.by_kind.items():
            self.events_by_kind[kind] = self.events_by_kind.get(kind, 0) + n
        self.unknown_logs += p.unknown
        self.skipped_logs += p.skipped
        self.last_events.update(p.last_rows)

    def record_upsert(self, result: UpsertResult) -> None:
        if result.ok:
            self.batches_sent += 1
            self.rows_upserted += result.rows
        else:
            self.failed_rows += result.rows
            self.dropped_batches += 1
            self.last_error = result.error

    def record_source_error(self, err: BaseException | str) -> None:
        self.source_errors += 1
        self.last_error = str(err)

    def record_reconnect(self) -> None:
        self.reconnects += 1

    def snapshot(self) -> StatusSnapshot:
        up = self.elapsed()
        blocks = 0 if self._first_block is None or self.current_block is None else self.current_block - self._first_block
        return StatusSnapshot(
            state=self.state,
            endpoint=self.endpoint,
            current_block=self.current_block,
            chain_height=self.chain_height,
            started_at=self.started_at,
            uptime_s=round(up, 3),
            events_total=self.events_total,
            events_by_kind=dict(self.events_by_kind),
            unknown_logs=self.unknown_logs,
            skipped_logs=self.skipped_logs,
            batches_sent=self.batches_sent,
            rows_upserted=self.rows_upserted,
            failed_rows=self.failed_rows,
            dropped_batches=self.dropped_batches,
            source_errors=self.source_errors,
            reconnects=self.reconnects,
            last_error=self.last_error,
            blocks_per_s=round(blocks / up, 3) if up > 0 else 0.0,
            events_per_s=round(self.events_total / up, 3) if up > 0 else 0.0,
            last_events={k: dict(v) for k, v in self.last_events.items()},
        )
