from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from ..domain.errors import FatalQueryError, TransientSourceError
from ..domain.models import (
    Batch, EndOfRange, EndpointDescriptor, LogFilter, RawLogRecord, StreamItem,
    normalize_address, normalize_topic,
)
from ..domain.value_types import TxHash
from ..ports.source import StreamHandle, StreamSource
from .http_errors import json_body, send, to_int

LOG_FIELDS = [
    "block_number", "log_index", "transaction_hash", "address", "data",
    "topic0", "topic1", "topic2", "topic3",
]
BLOCK_FIELDS = ["number", "timestamp"]


def build_query(log_filter: LogFilter, from_block: int, to_block: int | None = None) -> dict[str, Any]:
    selections: list[dict[str, Any]] = []
    for c in log_filter.clauses:
        sel: dict[str, Any] = {"topics": c.topics_param()}
        if c.addresses:
            sel["address"] = list(c.addresses)
        selections.append(sel)
    q: dict[str, Any] = {
        "from_block": from_block,
        "logs": selections,
        "field_selection": {"block": BLOCK_FIELDS, "log": LOG_FIELDS},
    }
    if to_block is not None:
        q["to_block"] = to_block
    return q


def _topics_of(rl: dict[str, Any]) -> tuple[str, ...]:
    if "topics" in rl:
        raw = [t for t in rl["topics"] if t]
    else:
        raw = [rl[k] for k in ("topic0", "topic1", "topic2", "topic3") if rl.get(k)]
    return tuple(normalize_topic(t) for t in raw)


def parse_response(body: dict[str, Any]) -> list[RawLogRecord]:
    """Flatten the `data` chunks of a /query response into typed records."""
    chunks = body.get("data") or []
    if isinstance(chunks, dict):
        chunks = [chunks]
    out: list[RawLogRecord] = []
    for chunk in chunks:
        ts_by_block = {
            to_int(b["number"]): to_int(b["timestamp"])
            for b in chunk.get("blocks") or []
            if b.get("number") is not None and b.get("timestamp") is not None
        }
        for rl in chunk.get("logs") or []:
            try:
                bn = to_int(rl["block_number"])
                out.append(RawLogRecord(
                    block_number=bn,
                    tx_hash=TxHash(str(rl["transaction_hash"]).lower()),
                    log_index=to_int(rl["log_index"]),
                    address=normalize_address(rl["address"]),
                    topics=_topics_of(rl),
                    data_hex=str(rl.get("data") or "0x"),
                    block_timestamp=ts_by_block.get(bn),
                ))
            except (KeyError, TypeError, ValueError, FatalQueryError) as e:
                logger.warning(f"dropping malformed log from source: {e!r} raw={rl!r:.200}")
    return out


class HyperSyncStream(StreamHandle):
    def __init__(self, source: "HyperSyncSource", log_filter: LogFilter, from_block: int, height: int) -> None:
        self._source = source
        self._filter = log_filter
        self._next = from_block
        self._height = height
        self._closed = False

    @property
    def next_block(self) -> int:
        return self._next

    async def receive(self) -> StreamItem:
        if self._closed:
            raise TransientSourceError("receive() on a closed stream", endpoint=self._source.endpoint)
        if self._next > self._height:
            return EndOfRange(self._next, self._height)

        body = await self._source.query(build_query(self._filter, self._next))
        if body.get("archive_height") is not None:
            self._height = to_int(body["archive_height"])
        if body.get("next_block") is None:
            raise TransientSourceError("response without next_block", endpoint=self._source.endpoint)
        next_block = to_int(body["next_block"])
        records = parse_response(body)

        if next_block < self._next:
            raise TransientSourceError(
                f"source moved backwards ({next_block} < {self._next})", endpoint=self._source.endpoint
            )
        if next_block == self._next and not records:
            return EndOfRange(self._next, self._height)
        self._next = next_block
        return Batch(tuple(records), next_block, self._height)

    async def close(self) -> None:
        self._closed = True


class HyperSyncSource(StreamSource):
    """HyperSync HTTP API: GET /height, POST /query."""

    def __init__(
        self,
        endpoint: EndpointDescriptor,
        *,
        timeout_s: float = 30,
        max_conn: int = 16,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint.url
        headers = {"Authorization": f"Bearer {endpoint.bearer_token}"} if endpoint.bearer_token else {}
        self.client = httpx.AsyncClient(
            base_url=endpoint.url.rstrip("/"),
            http2=transport is None,
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=max_conn, max_keepalive_connections=max(1, max_conn//2)),
            headers=headers,
            transport=transport,
        )

    async def height(self) -> int:
        r = await send(self.client, "GET", "/height", endpoint=self.endpoint)
        data = json_body(r, endpoint=self.endpoint)
        if not isinstance(data, dict) or data.get("height") is None:
            raise TransientSourceError(f"unexpected /height body: {data!r}", endpoint=self.endpoint)
        return to_int(data["height"])

    async def query(self, payload: dict[str, Any]) -> dict[str, Any]:
        r = await send(self.client, "POST", "/query", endpoint=self.endpoint, json=payload)
        data = json_body(r, endpoint=self.endpoint)
        if not isinstance(data, dict):
            raise TransientSourceError(f"unexpected /query body type {type(data).__name__}", endpoint=self.endpoint)
        return data

    async def open(self, log_filter: LogFilter, from_block: int) -> HyperSyncStream:
        height = await self.height()
        logger.debug(f"opening hypersync stream on {self.endpoint} from {from_block} (height {height})")
        return HyperSyncStream(self, log_filter, from_block, height)

    async def aclose(self) -> None:
        await self.client.aclose()
