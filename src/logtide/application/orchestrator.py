# logtide/application/orchestrator.py
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from ..domain.decoding import decode
from ..domain.errors import ConfigurationError, FatalQueryError, SinkWriteError, TransientSourceError
from ..domain.models import Batch, EndOfRange, EndpointDescriptor, LogFilter
from ..domain.projections import Projector
from ..domain.schemas import SchemaSet
from ..domain.value_types import IngestionState
from ..ports.source import StreamHandle, StreamSource
from ..ports.storage import CursorStore
from .cursor import CursorTracker
from .endpoints import EndpointPool
from .sink_writer import BatchSinkWriter
from .status import StatusState

T = TypeVar("T")
SourceFactory = Callable[[EndpointDescriptor], StreamSource]

# never retried: bad query, bad config, or a bug
FATAL_ERRORS: tuple[type[BaseException], ...] = (
    FatalQueryError, ConfigurationError, TypeError, AttributeError, NameError, AssertionError,
)


@dataclass(slots=True, frozen=True)
class OrchestratorConfig:
    poll_interval: float = 2.0
    request_timeout: float = 30.0
    failover_delay: float = 1.0
    reconnect_delay: float = 5.0
    max_backoff: float = 300.0
    progress_every_blocks: int = 10_000
    tip_report_interval: float = 300.0
    checkpoint_key: str = "default"


def _fmt_elapsed(s: float) -> str:
    s = int(s)
    return f"{s // 3600:02d}:{s % 3600 // 60:02d}:{s % 60:02d}"


class Orchestrator:
    """
    CONNECTING -> STREAMING <-> AT_TIP, with FAILED -> CONNECTING through endpoint failover.
    step() performs exactly one transition; run() loops it until stop().
    """

    def __init__(
        self,
        *,
        pool: EndpointPool,
        source_factory: SourceFactory,
        log_filter: LogFilter,
        schemas: SchemaSet,
        projector: Projector,
        writer: BatchSinkWriter,
        tracker: CursorTracker,
        status: StatusState | None = None,
        cursor_store: CursorStore | None = None,
        config: OrchestratorConfig = OrchestratorConfig(),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.pool = pool
        self.source_factory = source_factory
        self.log_filter = log_filter
        self.schemas = schemas
        self.projector = projector
        self.writer = writer
        self.tracker = tracker
        self.status = status or StatusState(clock=clock)
        self.cursor_store = cursor_store
        self.cfg = config
        self._sleep = sleep
        self._clock = clock

        self._state: IngestionState = "CONNECTING"
        self._source: StreamSource | None = None
        self._handle: StreamHandle | None = None
        self._known_height: int | None = None
        self._failures = 0                  # consecutive, reset by any successful source call
        self._last_error: BaseException | None = None
        self._last_progress_block = tracker.next_block
        self._last_tip_report: float | None = None
        self._stopping = False
        self.status.set_block(tracker.next_block)

    @property
    def state(self) -> IngestionState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    # ---- loop ----

    async def step(self) -> IngestionState:
        state = self._state
        try:
            if state == "CONNECTING":
                nxt = await self._connect()
            elif state == "STREAMING":
                nxt = await self._stream()
            elif state == "AT_TIP":
                nxt = await self._poll_tip()
            else:
                nxt = await self._failover(self._last_error)
        except FATAL_ERRORS:
            raise
        except Exception as e:
            if state in ("CONNECTING", "FAILED"):
                logger.warning(f"Connect to {self.pool.current().name} failed: {e}")
                nxt = await self._failover(e)
            else:
                logger.opt(exception=e).error(
                    f"{state} failed on {self.pool.current().name} at block {self.tracker.next_block}: {e}"
                )
                self._last_error = e
                nxt = "FAILED"
        self._state = nxt
        self.status.state = nxt
        return nxt

    async def run(self) -> None:
        self._stopping = False
        logger.info(f"Ingestion starting at block {self.tracker.next_block} on {self.pool.current().name}")
        try:
            while not self._stopping:
                await self.step()
        finally:
            await self.aclose()

    def stop(self) -> None:
        self._stopping = True

    async def aclose(self) -> None:
        await self._close_handle()
        await self._close_source()

    # ---- states ----

    async def _timed(self, aw: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(aw, timeout=self.cfg.request_timeout)
        except asyncio.TimeoutError as e:
            endpoint = self.pool.current().url
            raise TransientSourceError(f"{what} timed out after {self.cfg.request_timeout}s", endpoint=endpoint) from e

    async def _connect(self) -> IngestionState:
        ep = self.pool.current()
        if self._source is None:
            self._source = self.source_factory(ep)
        height = await self._timed(self._source.height(), "height")
        self._handle = await self._timed(self._source.open(self.log_filter, self.tracker.next_block), "open")
        self._known_height = height
        self.tracker.use_endpoint(ep.url)
        self.pool.mark(ep.url, "healthy")
        self.status.endpoint = ep.name
        self.status.chain_height = height
        logger.info(f"Streaming from {ep.name} at block {self.tracker.next_block} (chain height {height})")
        return "STREAMING"

    async def _stream(self) -> IngestionState:
        assert self._handle is not None, "STREAMING without an open handle"
        item = await self._timed(self._handle.receive(), "receive")
        self._failures = 0
        if isinstance(item, EndOfRange):
            if item.chain_height is not None:
                self._known_height = item.chain_height
                self.status.chain_height = item.chain_height
            self._report_tip(item.next_block)
            return "AT_TIP"
        await self._process(item)
        return "STREAMING"

    async def _poll_tip(self) -> IngestionState:
        assert self._source is not None, "AT_TIP without a source"
        await self._sleep(self.cfg.poll_interval)
        height = await self._timed(self._source.height(), "height")
        self._failures = 0
        self.status.chain_height = height
        if self._known_height is None or height > self._known_height:
            logger.debug(f"Chain height {self._known_height} -> {height}; reopening stream")
            self._known_height = height
            await self._close_handle()
            return "CONNECTING"
        return "AT_TIP"

    async def _failover(self, err: BaseException | None) -> IngestionState:
        failed = self.pool.current()
        self.pool.mark(failed.url, "unhealthy")
        self._failures += 1
        self.status.record_source_error(err or "unknown error")
        await self._close_handle()
        await self._close_source()
        nxt = self.pool.advance()
        delay = self.backoff_delay()
        logger.warning(
            f"Failure #{self._failures} on {failed.name}; reconnecting via {nxt.name} in {delay:.1f}s"
        )
        await self._sleep(delay)
        self.status.record_reconnect()
        return "CONNECTING"

    def backoff_delay(self) -> float:
        """Short failover delay for the first pass over the pool, then exponential per full round."""
        n, size = self._failures, len(self.pool)
        if n < size:
            return self.cfg.failover_delay
        rounds = n // size - 1
        return min(self.cfg.max_backoff, self.cfg.reconnect_delay * 2 ** rounds)

    # ---- batch ----

    async def _process(self, batch: Batch) -> None:
        decoded = decode(batch.records, self.schemas)
        proj = self.projector.project(decoded)
        self.status.record_projection(proj)

        # all tables finish before the cursor moves
        if proj.rows_by_table:
            await asyncio.gather(*(
                self.writer.upsert(table, rows) for table, rows in proj.rows_by_table.items()
            ))

        if batch.chain_height is not None:
            self._known_height = max(self._known_height or 0, batch.chain_height)
            self.status.chain_height = self._known_height
        if self.tracker.advance(batch.next_block):
            self.status.set_block(batch.next_block)
            await self._persist()
        self._maybe_progress()

    async def _persist(self) -> None:
        if self.cursor_store is None:
            return
        cur = self.tracker.snapshot()
        try:
            await self.cursor_store.save(self.cfg.checkpoint_key, cur)
        except (SinkWriteError, OSError) as e:
            logger.error(f"Checkpoint save at block {cur.next_block} failed: {e}")

    def _maybe_progress(self) -> None:
        block = self.tracker.next_block
        if block - self._last_progress_block < self.cfg.progress_every_blocks:
            return
        self._last_progress_block = block
        s = self.status
        logger.info(
            f"Block {block:,} | events {s.events_total:,} | upserts {s.rows_upserted:,} "
            f"| sink errors {s.failed_rows:,} | elapsed {_fmt_elapsed(s.elapsed())} | {s.endpoint}"
        )

    def _report_tip(self, block: int) -> None:
        now = self._clock()
        if self._last_tip_report is not None and now - self._last_tip_report < self.cfg.tip_report_interval:
            return
        self._last_tip_report = now
        logger.info(f"Reached chain tip at block {block:,}; polling every {self.cfg.poll_interval}s")

    # ---- resources ----

    async def _close_handle(self) -> None:
        h, self._handle = self._handle, None
        if h is None:
            return
        try:
            await h.close()
        except Exception as e:
            logger.debug(f"closing stream handle: {e!r}")

    async def _close_source(self) -> None:
        src, self._source = self._source, None
        if src is None:
            return
        try:
            await src.aclose()
        except Exception as e:
            logger.debug(f"closing source {src.endpoint}: {e!r}")

