"""
Status HTTP server.

Read-only JSON view of the running pipeline, served from the same event loop as the
ingestion task:

    GET /status            counters, cursor, chain height, rates, last event per kind
    GET /health            200 while streaming or at tip, 503 otherwise
    GET /health/endpoints  probes every configured endpoint for its chain height
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

from aiohttp import web
from loguru import logger

from ..application.endpoints import EndpointPool
from ..application.status import StatusState
from ..domain.models import EndpointDescriptor

HeightProbe = Callable[[EndpointDescriptor], Awaitable[int]]

STATUS_KEY = web.AppKey("status", StatusState)
POOL_KEY = web.AppKey("pool", EndpointPool)
PROBE_KEY = web.AppKey("probe", object)
PROBE_TIMEOUT_KEY = web.AppKey("probe_timeout", float)

_LIVE_STATES = ("STREAMING", "AT_TIP")


async def status_handler(request: web.Request) -> web.Response:
    return web.json_response(request.app[STATUS_KEY].snapshot().as_dict())


async def health_handler(request: web.Request) -> web.Response:
    snap = request.app[STATUS_KEY].snapshot()
    healthy = snap.state in _LIVE_STATES
    return web.json_response(
        {
            "status": "healthy" if healthy else "unhealthy",
            "state": snap.state,
            "current_block": snap.current_block,
            "chain_height": snap.chain_height,
            "endpoint": snap.endpoint,
        },
        status=200 if healthy else 503,
    )


async def _probe_one(probe: HeightProbe, ep: EndpointDescriptor, timeout: float) -> dict[str, Any]:
    t0 = time.perf_counter()
    out: dict[str, Any] = {"name": ep.name, "url": ep.url}
    try:
        out["height"] = await asyncio.wait_for(probe(ep), timeout=timeout)
        out["health"] = "healthy"
    except Exception as e:
        logger.warning(f"Endpoint probe {ep.name} failed: {e!r}")
        out["height"] = None
        out["health"] = "unhealthy"
        out["error"] = str(e) or type(e).__name__
    out["latency_ms"] = round((time.perf_counter() - t0) * 1000, 1)
    return out


async def endpoints_handler(request: web.Request) -> web.Response:
    pool = request.app[POOL_KEY]
    probe = request.app.get(PROBE_KEY)
    endpoints = pool.describe()
    if probe is None:
        results = [{"name": ep.name, "url": ep.url, "health": ep.health} for ep in endpoints]
    else:
        results = await asyncio.gather(*(_probe_one(probe, ep, request.app[PROBE_TIMEOUT_KEY]) for ep in endpoints))
        for r in results:
            pool.mark(r["url"], r["health"])
    current = pool.current()
    for r in results:
        r["current"] = r["url"] == current.url
    all_ok = all(r["health"] == "healthy" for r in results)
    return web.json_response(
        {"status": "healthy" if all_ok else "degraded", "endpoints": results},
        status=200 if any(r["health"] == "healthy" for r in results) else 503,
    )


def create_app(
    status: StatusState,
    pool: EndpointPool,
    probe: HeightProbe | None = None,
    *,
    probe_timeout: float = 10.0,
) -> web.Application:
    app = web.Application()
    app[STATUS_KEY] = status
    app[POOL_KEY] = pool
    if probe is not None:
        app[PROBE_KEY] = probe
    app[PROBE_TIMEOUT_KEY] = probe_timeout
    app.router.add_get("/status", status_handler)
    app.router.add_get("/health", health_handler)
    app.router.add_get("/health/endpoints", endpoints_handler)
    return app


async def start_status_server(app: web.Application, host: str = "0.0.0.0", port: int = 8080) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Status server listening on http://{host}:{port} (/status, /health, /health/endpoints)")
    return runner


async def stop_status_server(runner: web.AppRunner, timeout: float = 5) -> None:
    try:
        await asyncio.wait_for(runner.cleanup(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Status server cleanup timed out after {timeout}s")
