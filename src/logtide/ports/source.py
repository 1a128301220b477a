# logtide/ports/source.py
from __future__ import annotations

from typing import Protocol

from ..domain.models import LogFilter, StreamItem


class StreamHandle(Protocol):
    """A cursor-based pull stream over one endpoint, starting at an inclusive block."""

    async def receive(self) -> StreamItem:
        """Return the next Batch, or EndOfRange once drained up to the known chain tip."""

    async def close(self) -> None:
        """Release the handle. Safe to call more than once."""


class StreamSource(Protocol):
    """Port for a remote log source bound to a single endpoint."""

    endpoint: str

    async def height(self) -> int:
        """Return the highest block the source currently knows about."""

    async def open(self, log_filter: LogFilter, from_block: int) -> StreamHandle:
        """Open a stream for `log_filter` starting at `from_block` (inclusive)."""

    async def aclose(self) -> None:
        """Release client resources."""
