# logtide/application/bootstrap.py
from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from ..adapters.checkpoint_jsonl import JSONLCheckpoints
from ..adapters.console_sink import ConsoleStore
from ..adapters.hypersync_httpx import HyperSyncSource
from ..adapters.postgrest_sink import PostgrestStore
from ..adapters.rpc_httpx import JsonRpcSource
from ..adapters.sqlite_sink import SqliteStore
from ..config import Settings
from ..domain.errors import ConfigurationError, SinkWriteError
from ..domain.models import EndpointDescriptor
from ..ports.source import StreamSource
from ..ports.storage import CursorStore, RowStore
from .cursor import CursorTracker
from .endpoints import EndpointPool
from .orchestrator import Orchestrator, OrchestratorConfig, SourceFactory
from .presets import Pipeline, Preset, PresetOptions, custom_pipeline, get_preset
from .sink_writer import BatchSinkWriter
from .status import StatusState


@dataclass(slots=True)
class Runtime:
    settings: Settings
    pipeline: Pipeline
    pool: EndpointPool
    status: StatusState
    store: RowStore
    cursor_store: CursorStore | None
    orchestrator: Orchestrator
    source_factory: SourceFactory

    async def probe(self, ep: EndpointDescriptor) -> int:
        src = self.source_factory(ep)
        try:
            return await src.height()
        finally:
            await src.aclose()

    async def aclose(self) -> None:
        await self.orchestrator.aclose()
        await self.store.aclose()


def resolve_pipeline(settings: Settings) -> tuple[Pipeline, Preset | None]:
    opts = PresetOptions(
        contracts=settings.contract_list(),
        target_address=settings.target_address,
        token_a=settings.token_a,
        token_b=settings.token_b,
    )
    if settings.preset == "custom":
        return custom_pipeline(settings.signature_list(), opts), None
    preset = get_preset(settings.preset)
    return preset.pipeline(opts), preset


def make_source_factory(settings: Settings) -> SourceFactory:
    def factory(ep: EndpointDescriptor) -> StreamSource:
        if settings.source == "rpc":
            return JsonRpcSource(ep, step=settings.rpc_block_step, timeout_s=settings.request_timeout)
        return HyperSyncSource(ep, timeout_s=settings.request_timeout)
    return factory


def make_store(settings: Settings) -> RowStore:
    if settings.sink == "supabase":
        if not (settings.supabase_url and settings.supabase_service_key):
            raise ConfigurationError("sink=supabase needs supabase_url and supabase_service_key")
        return PostgrestStore(settings.supabase_url, settings.supabase_service_key, timeout_s=settings.request_timeout)
    if settings.sink == "sqlite":
        try:
            return SqliteStore(settings.sqlite_path)
        except sqlite3.Error as e:
            raise ConfigurationError(f"cannot open sqlite database {settings.sqlite_path}: {e}") from e
    return ConsoleStore()


def make_cursor_store(settings: Settings, store: RowStore) -> CursorStore | None:
    if settings.checkpoint_path:
        return JSONLCheckpoints(settings.checkpoint_path)
    if isinstance(store, (PostgrestStore, SqliteStore)):
        return store
    logger.warning("No checkpoint store configured; progress will not survive a restart")
    return None


async def build_runtime(
    settings: Settings,
    *,
    source_factory: SourceFactory | None = None,
    store: RowStore | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Runtime:
    pipeline, preset = resolve_pipeline(settings)
    pool = EndpointPool.from_urls(
        settings.endpoint_urls(preset.network if preset else None), bearer_token=settings.bearer_token
    )
    store = store or make_store(settings)
    try:
        await store.check(pipeline.tables)
    except SinkWriteError as e:
        await store.aclose()
        raise ConfigurationError(f"sink check failed: {e}") from e

    cursor_store = make_cursor_store(settings, store)
    key = settings.checkpoint_key or pipeline.name
    try:
        saved = await cursor_store.load(key) if cursor_store is not None else None
    except (SinkWriteError, OSError) as e:
        await store.aclose()
        raise ConfigurationError(f"checkpoint load failed for {key}: {e}") from e
    start = settings.start_block if settings.start_block is not None else (preset.start_block if preset else 0)
    tracker = CursorTracker.resume(saved, start)
    if saved is not None:
        logger.info(f"Resuming {key} from checkpoint block {saved.next_block}")

    status = StatusState()
    writer = BatchSinkWriter(
        store,
        max_attempts=settings.sink_max_attempts,
        base_delay=settings.sink_retry_base_delay,
        status=status,
        sleep=sleep,
    )
    factory = source_factory or make_source_factory(settings)
    orchestrator = Orchestrator(
        pool=pool,
        source_factory=factory,
        log_filter=pipeline.log_filter,
        schemas=pipeline.schemas,
        projector=pipeline.projector,
        writer=writer,
        tracker=tracker,
        status=status,
        cursor_store=cursor_store,
        config=OrchestratorConfig(
            poll_interval=settings.poll_interval,
            request_timeout=settings.request_timeout,
            failover_delay=settings.failover_delay,
            reconnect_delay=settings.reconnect_delay,
            max_backoff=settings.max_backoff,
            progress_every_blocks=settings.progress_every_blocks,
            tip_report_interval=settings.tip_report_interval,
            checkpoint_key=key,
        ),
        sleep=sleep,
    )
    return Runtime(settings, pipeline, pool, status, store, cursor_store, orchestrator, factory)
