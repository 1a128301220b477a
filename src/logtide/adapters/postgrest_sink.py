from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

import httpx
from loguru import logger

from ..domain.errors import SinkWriteError
from ..domain.models import IngestionCursor, SinkRecord
from ..ports.storage import CursorStore, RowStore

NATURAL_KEY = "transaction_hash,log_index"


def _error_text(r: httpx.Response) -> str:
    try:
        body = r.json()
    except ValueError:
        return r.text[:300]
    if isinstance(body, dict):
        return " ".join(str(body[k]) for k in ("code", "message", "details", "hint") if body.get(k))
    return str(body)[:300]


class PostgrestStore(RowStore, CursorStore):
    """
    Supabase/PostgREST sink. Upserts with `Prefer: resolution=merge-duplicates` on the
    (transaction_hash, log_index) primary key; the cursor lives in `checkpoint_table`
    keyed by pipeline name and must exist beforehand:

        create table ingestion_checkpoints (
            pipeline   text primary key,
            next_block bigint not null,
            endpoint   text,
            updated_at timestamptz
        );
    """

    def __init__(
        self,
        base_url: str,
        service_key: str,
        *,
        checkpoint_table: str = "ingestion_checkpoints",
        timeout_s: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.checkpoint_table = checkpoint_table
        self.client = httpx.AsyncClient(
            base_url=f"{self.base_url}/rest/v1",
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout_s),
            transport=transport,
        )

    async def _send(self, method: str, path: str, *, table: str, **kw: Any) -> httpx.Response:
        try:
            r = await self.client.request(method, path, **kw)
        except httpx.HTTPError as e:
            raise SinkWriteError(f"{method} {path} failed: {e!r}", table=table) from e
        if r.status_code >= 300:
            raise SinkWriteError(f"{method} {path} -> {r.status_code}: {_error_text(r)}", table=table)
        return r

    async def upsert(self, table: str, records: Sequence[SinkRecord]) -> None:
        if not records:
            return
        await self._send(
            "POST", f"/{table}", table=table,
            params={"on_conflict": NATURAL_KEY},
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
            json=[r.as_row() for r in records],
        )

    async def check(self, tables: Sequence[str]) -> None:
        for t in tables:
            await self._send("GET", f"/{t}", table=t, params={"select": "transaction_hash", "limit": "1"})
            logger.info(f"Supabase table {t} reachable")

    async def load(self, key: str) -> IngestionCursor | None:
        r = await self._send(
            "GET", f"/{self.checkpoint_table}", table=self.checkpoint_table,
            params={"pipeline": f"eq.{key}", "select": "next_block,endpoint,updated_at", "limit": "1"},
        )
        rows = r.json()
        if not rows:
            return None
        row = rows[0]
        ts = row.get("updated_at")
        return IngestionCursor(
            next_block=int(row["next_block"]),
            endpoint_in_use=row.get("endpoint"),
            last_advanced_at=datetime.fromisoformat(ts.replace("Z", "+00:00")) if ts else None,
        )

    async def save(self, key: str, cursor: IngestionCursor) -> None:
        await self._send(
            "POST", f"/{self.checkpoint_table}", table=self.checkpoint_table,
            params={"on_conflict": "pipeline"},
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
            json=[{
                "pipeline": key,
                "next_block": cursor.next_block,
                "endpoint": cursor.endpoint_in_use,
                "updated_at": cursor.last_advanced_at.isoformat() if cursor.last_advanced_at else None,
            }],
        )

    async def aclose(self) -> None:
        await self.client.aclose()
