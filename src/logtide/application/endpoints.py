# logtide/application/endpoints.py
from __future__ import annotations

from dataclasses import replace
from typing import Sequence
from urllib.parse import urlsplit

from loguru import logger

from ..domain.errors import NoEndpointsConfigured
from ..domain.models import EndpointDescriptor
from ..domain.value_types import Health


class EndpointPool:
    """
    Ordered, round-robin set of equivalent endpoints. The selection pointer is a single
    int owned by the ingestion task; readers (status server) only call describe()/current().
    """

    def __init__(self, endpoints: Sequence[EndpointDescriptor]) -> None:
        if not endpoints:
            raise NoEndpointsConfigured("at least one endpoint URL is required")
        self._endpoints: list[EndpointDescriptor] = list(endpoints)
        self._idx = 0

    @classmethod
    def from_urls(cls, urls: Sequence[str], *, bearer_token: str | None = None) -> "EndpointPool":
        return cls([
            EndpointDescriptor(name=urlsplit(u).netloc or u, url=u, bearer_token=bearer_token)
            for u in urls
        ])

    def __len__(self) -> int:
        return len(self._endpoints)

    def current(self) -> EndpointDescriptor:
        return self._endpoints[self._idx]

    def advance(self) -> EndpointDescriptor:
        prev = self._endpoints[self._idx]
        self._idx = (self._idx + 1) % len(self._endpoints)
        cur = self._endpoints[self._idx]
        if cur is not prev:
            logger.info(f"Endpoint failover: {prev.name} -> {cur.name}")
        return cur

    def describe(self) -> tuple[EndpointDescriptor, ...]:
        return tuple(self._endpoints)

    def mark(self, endpoint: str, health: Health) -> None:
        """Record observed health for the endpoint with this name or URL."""
        for i, ep in enumerate(self._endpoints):
            if endpoint in (ep.name, ep.url):
                if ep.health != health:
                    self._endpoints[i] = replace(ep, health=health)
                return
        logger.debug(f"mark(): unknown endpoint {endpoint!r}")
