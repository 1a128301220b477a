from __future__ import annotations
import asyncio, httpx
from typing import Any, Awaitable, Callable
from loguru import logger

from ..domain.errors import FatalQueryError, TransientSourceError
from ..domain.models import (
    Batch, EndOfRange, EndpointDescriptor, FilterClause, LogFilter, RawLogRecord, StreamItem,
    normalize_address, normalize_topic,
)
from ..domain.value_types import TxHash
from ..ports.source import StreamHandle, StreamSource
from .http_errors import check_status, json_body, request, retry_after, to_int

# JSON-RPC error codes that mean the request itself is bad
_FATAL_RPC_CODES = frozenset({-32600, -32601, -32602})

def _to_hex_block(n: int) -> str: return hex(int(n))


def _log_params(clause: FilterClause, from_block: int, to_block: int) -> dict[str, Any]:
    p: dict[str, Any] = {
        "fromBlock": _to_hex_block(from_block),
        "toBlock": _to_hex_block(to_block),
        "topics": [list(pos) or None for pos in clause.topics_param()],
    }
    if clause.addresses:
        p["address"] = list(clause.addresses)
    return p


def _typed(rl: dict[str, Any]) -> RawLogRecord:
    ts = rl.get("blockTimestamp")
    return RawLogRecord(
        block_number=to_int(rl["blockNumber"]),
        tx_hash=TxHash(str(rl["transactionHash"]).lower()),
        log_index=to_int(rl["logIndex"]),
        address=normalize_address(rl["address"]),
        topics=tuple(normalize_topic(t) for t in rl.get("topics", [])),
        data_hex=str(rl.get("data") or "0x"),
        block_timestamp=to_int(ts) if ts is not None else None,
    )


class JsonRpcStream(StreamHandle):
    def __init__(self, source: "JsonRpcSource", log_filter: LogFilter, from_block: int, tip: int) -> None:
        self._source = source
        self._filter = log_filter
        self._next = from_block
        self._tip = tip
        self._closed = False

    async def receive(self) -> StreamItem:
        if self._closed:
            raise TransientSourceError("receive() on a closed stream", endpoint=self._source.endpoint)
        if self._next > self._tip:
            return EndOfRange(self._next, self._tip)
        fb, tb = self._next, min(self._tip, self._next + self._source.step - 1)

        # clauses are OR-ed: one eth_getLogs each, merged on the natural key
        merged: dict[tuple[str, int], RawLogRecord] = {}
        for clause in self._filter.clauses:
            for rec in await self._source.get_logs(clause, fb, tb):
                merged[rec.natural_key] = rec
        records = sorted(merged.values(), key=lambda r: (r.block_number, r.log_index))
        self._next = tb + 1
        return Batch(tuple(records), self._next, self._tip)

    async def close(self) -> None:
        self._closed = True


class JsonRpcSource(StreamSource):
    """Plain Ethereum JSON-RPC (eth_blockNumber / eth_getLogs) walked in fixed block steps."""

    def __init__(
        self,
        endpoint: EndpointDescriptor,
        *,
        step: int = 2_000,
        timeout_s: float = 30,
        max_conn: int = 64,
        max_429_retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.endpoint = endpoint.url
        self.step = step
        self.max_429_retries = max_429_retries
        self._sleep = sleep
        headers = {"Authorization": f"Bearer {endpoint.bearer_token}"} if endpoint.bearer_token else {}
        self.client = httpx.AsyncClient(
            http2=transport is None,
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=max_conn, max_keepalive_connections=max_conn//2),
            headers=headers,
            transport=transport,
        )

    async def call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc":"2.0","id":1,"method":method,"params":params}
        # retry on 429 with simple backoff
        for attempt in range(self.max_429_retries + 1):
            r = await request(self.client, "POST", self.endpoint, endpoint=self.endpoint, json=payload)
            if r.status_code == 429 and attempt < self.max_429_retries:
                await self._sleep(retry_after(r, attempt)); continue
            check_status(r, endpoint=self.endpoint)
            data = json_body(r, endpoint=self.endpoint)
            if not isinstance(data, dict):
                raise TransientSourceError(f"{method}: unexpected response {data!r:.200}", endpoint=self.endpoint)
            if "error" in data:
                err = data["error"]
                code = err.get("code") if isinstance(err, dict) else None
                msg = err.get("message") if isinstance(err, dict) else str(err)
                if code in _FATAL_RPC_CODES:
                    raise FatalQueryError(f"{method} rejected: code={code} message={msg}", endpoint=self.endpoint)
                raise TransientSourceError(f"{method} RPC error code={code} message={msg}", endpoint=self.endpoint)
            return data.get("result")
        raise TransientSourceError(f"Retries exhausted for {method}", endpoint=self.endpoint)

    async def height(self) -> int:
        return to_int(await self.call("eth_blockNumber", []))

    async def get_logs(self, clause: FilterClause, from_block: int, to_block: int) -> list[RawLogRecord]:
        res = await self.call("eth_getLogs", [_log_params(clause, from_block, to_block)])
        typed: list[RawLogRecord] = []
        for rl in res or []:
            try:
                typed.append(_typed(rl))
            except (KeyError, TypeError, ValueError, FatalQueryError) as e:
                logger.warning(f"dropping malformed log from {self.endpoint}: {e!r}")
        return typed

    async def open(self, log_filter: LogFilter, from_block: int) -> JsonRpcStream:
        return JsonRpcStream(self, log_filter, from_block, await self.height())

    async def aclose(self) -> None:
        await self.client.aclose()
