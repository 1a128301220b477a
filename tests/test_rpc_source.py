"""Tests for the JSON-RPC fallback adapter."""

from __future__ import annotations

import json

import httpx
import pytest

from factories import ALICE, BOB, TOKEN, RecordingSleep, data, tx
from logtide.adapters.rpc_httpx import JsonRpcSource
from logtide.domain.errors import FatalQueryError, TransientSourceError
from logtide.domain.models import Batch, EndOfRange, EndpointDescriptor, FilterClause, LogFilter, address_topic
from logtide.domain.schemas import parse_signature

TRANSFER = parse_signature("Transfer(address indexed from, address indexed to, uint256 amount)").topic0
EP = EndpointDescriptor("rpc", "https://rpc.example")


def _rpc_log(block: int, idx: int, tx_no: int) -> dict:
    return {
        "blockNumber": hex(block),
        "logIndex": hex(idx),
        "transactionHash": tx(tx_no),
        "address": TOKEN,
        "topics": [TRANSFER, address_topic(ALICE), address_topic(BOB)],
        "data": data(1),
    }


def _ok(result) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})


@pytest.mark.asyncio
async def test_windows_merge_clauses_and_dedupe() -> None:
    calls: list[dict] = []
    a, b, shared = _rpc_log(105, 1, 1), _rpc_log(101, 0, 2), _rpc_log(103, 4, 3)

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if body["method"] == "eth_blockNumber":
            return _ok(hex(112))
        params = body["params"][0]
        calls.append(params)
        return _ok([a, shared] if len(params["topics"]) > 1 else [shared, b])

    log_filter = LogFilter((
        FilterClause(addresses=(TOKEN,), topics=((TRANSFER,), (address_topic(ALICE),))),
        FilterClause(addresses=(TOKEN,), topics=((TRANSFER,),)),
    ))
    src = JsonRpcSource(EP, step=10, transport=httpx.MockTransport(handler))
    handle = await src.open(log_filter, 100)

    first = await handle.receive()
    assert isinstance(first, Batch)
    assert [(r.block_number, r.log_index) for r in first.records] == [(101, 0), (103, 4), (105, 1)]
    assert first.next_block == 110
    assert calls[0]["fromBlock"] == hex(100) and calls[0]["toBlock"] == hex(109)
    assert calls[0]["address"] == [TOKEN]

    second = await handle.receive()
    assert isinstance(second, Batch) and second.next_block == 113
    assert calls[-1]["toBlock"] == hex(112)

    assert isinstance(await handle.receive(), EndOfRange)
    await src.aclose()


@pytest.mark.asyncio
async def test_429_is_retried_with_retry_after() -> None:
    responses = [
        httpx.Response(429, headers={"Retry-After": "2"}),
        httpx.Response(429),
        _ok("0x10"),
    ]
    sleep = RecordingSleep()
    src = JsonRpcSource(EP, transport=httpx.MockTransport(lambda r: responses.pop(0)), sleep=sleep)

    assert await src.height() == 16
    assert sleep.delays == [2.0, 2.0]
    await src.aclose()


@pytest.mark.asyncio
async def test_429_budget_exhausted_is_transient() -> None:
    sleep = RecordingSleep()
    src = JsonRpcSource(EP, max_429_retries=2, transport=httpx.MockTransport(lambda r: httpx.Response(429)), sleep=sleep)

    with pytest.raises(TransientSourceError):
        await src.height()
    assert len(sleep.delays) == 2
    await src.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("code, exc", [(-32602, FatalQueryError), (-32600, FatalQueryError), (-32000, TransientSourceError)])
async def test_rpc_error_codes(code: int, exc: type) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": "x"}})

    src = JsonRpcSource(EP, transport=httpx.MockTransport(handler))
    with pytest.raises(exc):
        await src.height()
    await src.aclose()


@pytest.mark.asyncio
async def test_bearer_token_header() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        return _ok("0x1")

    src = JsonRpcSource(EndpointDescriptor("rpc", "https://rpc.example", "t0k"), transport=httpx.MockTransport(handler))
    await src.height()
    await src.aclose()
    assert seen["auth"] == "Bearer t0k"
