from __future__ import annotations
import os, json, asyncio
from datetime import datetime
from loguru import logger
from ..domain.models import IngestionCursor
from ..ports.storage import CursorStore


class JSONLCheckpoints(CursorStore):
    """Append-only cursor log. Every save is one fsync'ed line; on load the last line for a key wins."""

    def __init__(self, path: str) -> None:
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._lock = asyncio.Lock()

    def _read_last(self, key: str) -> IngestionCursor | None:
        if not os.path.exists(self.path):
            return None
        last: IngestionCursor | None = None
        with open(self.path, "r") as f:
            for n, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    d = json.loads(line)
                    if d.get("key") != key:
                        continue
                    ts = d.get("updated_at")
                    last = IngestionCursor(
                        next_block=int(d["next_block"]),
                        endpoint_in_use=d.get("endpoint"),
                        last_advanced_at=datetime.fromisoformat(ts) if ts else None,
                    )
                except (ValueError, KeyError, TypeError, AttributeError) as e:
                    # a torn final line after a crash is expected; skip it
                    logger.warning(f"{self.path}:{n}: unreadable checkpoint line skipped ({e!r})")
        return last

    def _append(self, line: str) -> None:
        with open(self.path, "a") as f:
            f.write(line); f.flush(); os.fsync(f.fileno())

    async def load(self, key: str) -> IngestionCursor | None:
        async with self._lock:
            return await asyncio.to_thread(self._read_last, key)

    async def save(self, key: str, cursor: IngestionCursor) -> None:
        line = json.dumps({
            "key": key,
            "next_block": cursor.next_block,
            "endpoint": cursor.endpoint_in_use,
            "updated_at": cursor.last_advanced_at.isoformat() if cursor.last_advanced_at else None,
        }, separators=(",", ":")) + "\n"
        async with self._lock:
            await asyncio.to_thread(self._append, line)
