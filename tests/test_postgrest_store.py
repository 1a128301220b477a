"""Tests for the Supabase/PostgREST sink."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from factories import tx
from logtide.adapters.postgrest_sink import PostgrestStore
from logtide.domain.errors import SinkWriteError
from logtide.domain.models import IngestionCursor, SinkRecord


def _store(handler) -> PostgrestStore:
    return PostgrestStore("https://proj.supabase.co/", "svc-key", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_upsert_request_shape() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201)

    store = _store(handler)
    await store.upsert("swap_events", [SinkRecord(tx(1), 2, {"block_number": 5, "sender": "0xabc"})])
    await store.upsert("swap_events", [])
    await store.aclose()

    [req] = seen
    assert req.method == "POST"
    assert req.url.path == "/rest/v1/swap_events"
    assert req.url.params["on_conflict"] == "transaction_hash,log_index"
    assert req.headers["apikey"] == "svc-key"
    assert req.headers["authorization"] == "Bearer svc-key"
    assert "resolution=merge-duplicates" in req.headers["prefer"]
    assert json.loads(req.content) == [
        {"block_number": 5, "sender": "0xabc", "transaction_hash": tx(1), "log_index": 2}
    ]


@pytest.mark.asyncio
async def test_error_status_raises_sink_write_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={"code": "23505", "message": "duplicate key"})

    store = _store(handler)
    with pytest.raises(SinkWriteError) as info:
        await store.upsert("t", [SinkRecord(tx(1), 0, {})])
    assert info.value.table == "t"
    assert "duplicate key" in str(info.value)
    await store.aclose()


@pytest.mark.asyncio
async def test_transport_error_raises_sink_write_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    store = _store(handler)
    with pytest.raises(SinkWriteError):
        await store.check(["tapped_events"])
    await store.aclose()


@pytest.mark.asyncio
async def test_checkpoint_load_and_save() -> None:
    saved: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/rest/v1/ingestion_checkpoints"
        if request.method == "GET":
            if request.url.params["pipeline"] == "eq.last-tap":
                return httpx.Response(200, json=[
                    {"next_block": 3_300_000, "endpoint": "https://a.example", "updated_at": "2025-01-01T00:00:00Z"}
                ])
            return httpx.Response(200, json=[])
        assert request.url.params["on_conflict"] == "pipeline"
        saved.extend(json.loads(request.content))
        return httpx.Response(201)

    store = _store(handler)
    cur = await store.load("last-tap")
    assert cur == IngestionCursor(3_300_000, "https://a.example", datetime(2025, 1, 1, tzinfo=timezone.utc))
    assert await store.load("other") is None

    await store.save("last-tap", IngestionCursor(3_300_500, "https://b.example", None))
    await store.aclose()
    assert saved == [{"pipeline": "last-tap", "next_block": 3_300_500, "endpoint": "https://b.example", "updated_at": None}]
