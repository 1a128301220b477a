from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from loguru import logger

from ..domain.models import IngestionCursor


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CursorTracker:
    """In-memory cursor; persistence goes through a CursorStore owned by the orchestrator."""

    def __init__(
        self,
        next_block: int,
        *,
        endpoint: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if next_block < 0:
            raise ValueError(f"next_block must be >= 0, got {next_block}")
        self._next = next_block
        self._endpoint = endpoint
        self._advanced_at: datetime | None = None
        self._clock = clock

    @classmethod
    def resume(cls, saved: IngestionCursor | None, start_block: int, **kw) -> "CursorTracker":
        if saved is None:
            return cls(start_block, **kw)
        if saved.next_block < start_block:
            logger.warning(
                f"Saved cursor {saved.next_block} is below the configured start block {start_block}; "
                "resuming from the saved cursor"
            )
        t = cls(saved.next_block, endpoint=saved.endpoint_in_use, **kw)
        t._advanced_at = saved.last_advanced_at
        return t

    @property
    def next_block(self) -> int:
        return self._next

    def advance(self, new_next_block: int) -> bool:
        """Move forward to `new_next_block`. Returns False (and changes nothing) when it would go back."""
        if new_next_block < self._next:
            logger.warning(f"Ignoring out-of-order cursor update {new_next_block} < {self._next}")
            return False
        if new_next_block == self._next:
            return False
        self._next = new_next_block
        self._advanced_at = self._clock()
        return True

    def use_endpoint(self, endpoint: str) -> None:
        self._endpoint = endpoint

    def snapshot(self) -> IngestionCursor:
        return IngestionCursor(self._next, self._endpoint, self._advanced_at)
