import asyncio, signal, sys, time
import click
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .application.bootstrap import build_runtime, make_cursor_store, make_source_factory, make_store, resolve_pipeline
from .application.endpoints import EndpointPool
from .application.orchestrator import FATAL_ERRORS
from .application.presets import PRESETS, PresetOptions
from .config import Settings, load_settings
from .domain.errors import ConfigurationError, SinkWriteError
from .logs import setup_logging
from .presentation.status_server import create_app, start_status_server, stop_status_server

console = Console()


def _settings(**overrides) -> Settings:
    try:
        return load_settings(**overrides)
    except ConfigurationError as e:
        raise click.ClickException(str(e))


def _common(f):
    f = click.option("--preset", default=None, help=f"Pipeline preset ({', '.join(sorted(PRESETS))} or custom)")(f)
    f = click.option("--network", default=None, help="Network name used to pick default endpoints")(f)
    f = click.option("--endpoint", "endpoints", multiple=True, help="Source URL; repeat for failover order")(f)
    f = click.option("--source", type=click.Choice(["hypersync", "rpc"]), default=None)(f)
    f = click.option("--sink", type=click.Choice(["supabase", "sqlite", "console"]), default=None)(f)
    f = click.option("--sqlite-path", default=None, help="SQLite database file (sink=sqlite)")(f)
    f = click.option("--checkpoint", "checkpoint_path", default=None, help="JSONL checkpoint file")(f)
    f = click.option("--log-level", default=None, help="TRACE..CRITICAL")(f)
    return f


def _overrides(preset, network, endpoints, source, sink, sqlite_path, checkpoint_path, log_level, **extra) -> dict:
    return dict(
        preset=preset, network=network, endpoints=",".join(endpoints) or None, source=source, sink=sink,
        sqlite_path=sqlite_path, checkpoint_path=checkpoint_path, log_level=log_level, **extra,
    )


def _stop_on_sigterm(orchestrator) -> None:
    """SIGTERM ends the run loop at the next step boundary; run() then closes the source."""
    if sys.platform == "win32":
        return

    def on_term():
        logger.info("SIGTERM received; stopping after the current step")
        orchestrator.stop()

    asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, on_term)


@click.group()
def cli():
    """logtide: resumable smart-contract event ingestion."""


@cli.command("run")
@_common
@click.option("--contract", "contracts", multiple=True, help="Emitter contract address; repeat to OR")
@click.option("--start-block", type=int, default=None, help="First block when no checkpoint exists")
@click.option("--status-port", type=int, default=None)
@click.option("--no-status", is_flag=True, default=False, help="Do not start the status HTTP server")
def run_cmd(contracts, start_block, status_port, no_status, **common):
    """Stream, decode and upsert events until interrupted."""
    settings = _settings(**_overrides(
        **common,
        contract_addresses=",".join(contracts) or None,
        start_block=start_block,
        status_port=status_port,
        status_enabled=False if no_status else None,
    ))
    setup_logging(settings.log_level, settings.log_file, settings.log_json)

    async def run():
        rt = await build_runtime(settings)
        _stop_on_sigterm(rt.orchestrator)
        runner = None
        if settings.status_enabled:
            app = create_app(rt.status, rt.pool, rt.probe, probe_timeout=settings.request_timeout)
            runner = await start_status_server(app, settings.status_host, settings.status_port)
        logger.info(
            f"Pipeline {rt.pipeline.name}: {len(rt.pipeline.schemas)} event(s) -> {', '.join(rt.pipeline.tables)} "
            f"via {settings.sink}; endpoints {', '.join(ep.name for ep in rt.pool.describe())}"
        )
        try:
            await rt.orchestrator.run()
        finally:
            if runner is not None:
                await stop_status_server(runner)
            await rt.aclose()

    try:
        asyncio.run(run())
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    except KeyboardInterrupt:
        console.print("[yellow]stopped[/]")
    except FATAL_ERRORS as e:
        logger.exception(f"Fatal error, exiting: {e}")
        sys.exit(1)


@cli.command("schemas")
@click.option("--preset", "only", default=None, help="Show a single preset")
def schemas_cmd(only):
    """List presets with their event signatures, topic0 hashes and target tables."""
    if only and only not in PRESETS:
        raise click.ClickException(f"unknown preset {only!r}")
    presets = [PRESETS[only]] if only else list(PRESETS.values())
    table = Table(title="presets", expand=True)
    for col in ("preset", "event", "signature", "topic0", "table"):
        table.add_column(col, overflow="fold")
    for p in presets:
        pipe = p.pipeline(PresetOptions())
        for s in pipe.schemas:
            table.add_row(p.name, s.name, s.signature, s.topic0, pipe.projector.mapping_for(s.name).table)
    console.print(table)


@cli.command("endpoints")
@_common
def endpoints_cmd(**common):
    """Probe every configured endpoint for its chain height."""
    settings = _settings(**_overrides(**common))
    setup_logging(settings.log_level, settings.log_file, settings.log_json)
    try:
        _, preset = resolve_pipeline(settings)
        pool = EndpointPool.from_urls(settings.endpoint_urls(preset.network if preset else None),
                                      bearer_token=settings.bearer_token)
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    factory = make_source_factory(settings)

    async def probe(ep):
        src = factory(ep); t0 = time.perf_counter()
        try:
            h = await src.height()
            return ep, h, None, (time.perf_counter() - t0) * 1000
        except Exception as e:
            return ep, None, str(e), (time.perf_counter() - t0) * 1000
        finally:
            await src.aclose()

    async def run():
        return await asyncio.gather(*(probe(ep) for ep in pool.describe()))

    table = Table(title=f"endpoints ({settings.source})")
    for col in ("name", "url", "height", "latency ms", "error"):
        table.add_column(col)
    failed = 0
    for ep, h, err, ms in asyncio.run(run()):
        failed += err is not None
        table.add_row(ep.name, ep.url, f"{h:,}" if h is not None else "-", f"{ms:.0f}", f"[red]{escape(err)}[/]" if err else "")
    console.print(table)
    if failed == len(pool):
        sys.exit(1)


@cli.command("checkpoint")
@_common
@click.option("--key", default=None, help="Checkpoint key (defaults to the preset name)")
def checkpoint_cmd(key, **common):
    """Show the persisted cursor for a pipeline."""
    settings = _settings(**_overrides(**common, checkpoint_key=key))
    setup_logging(settings.log_level, settings.log_file, settings.log_json)

    async def run():
        pipeline, _ = resolve_pipeline(settings)
        store = make_store(settings)
        try:
            cursor_store = make_cursor_store(settings, store)
            k = settings.checkpoint_key or pipeline.name
            return k, (await cursor_store.load(k) if cursor_store is not None else None)
        finally:
            await store.aclose()

    try:
        k, cur = asyncio.run(run())
    except (ConfigurationError, SinkWriteError) as e:
        raise click.ClickException(str(e))
    if cur is None:
        console.print(f"[yellow]no checkpoint[/] for [bold]{k}[/]")
        return
    console.print(
        f"[bold]{k}[/]: next_block=[green]{cur.next_block:,}[/]  endpoint={cur.endpoint_in_use or '-'}  "
        f"updated={cur.last_advanced_at.isoformat() if cur.last_advanced_at else '-'}"
    )


if __name__ == "__main__":
    cli()
