from __future__ import annotations

from typing import Any

import httpx

from ..domain.errors import FatalQueryError, TransientSourceError

# statuses that mean "your query is wrong", not "try again"
FATAL_STATUSES = frozenset({400, 413, 422})


async def request(client: httpx.AsyncClient, method: str, url: str, *, endpoint: str, **kw: Any) -> httpx.Response:
    """Issue one request; timeouts and connection failures become TransientSourceError."""
    try:
        return await client.request(method, url, **kw)
    except httpx.TimeoutException as e:
        raise TransientSourceError(f"timeout calling {endpoint}: {e!r}", endpoint=endpoint) from e
    except httpx.TransportError as e:
        raise TransientSourceError(f"connection error calling {endpoint}: {e!r}", endpoint=endpoint) from e


def check_status(r: httpx.Response, *, endpoint: str) -> httpx.Response:
    if r.status_code in FATAL_STATUSES:
        raise FatalQueryError(f"{endpoint} rejected query ({r.status_code}): {r.text[:300]}", endpoint=endpoint)
    if r.status_code >= 400:
        raise TransientSourceError(f"{endpoint} returned {r.status_code}: {r.text[:300]}", endpoint=endpoint)
    return r


async def send(client: httpx.AsyncClient, method: str, url: str, *, endpoint: str, **kw: Any) -> httpx.Response:
    return check_status(await request(client, method, url, endpoint=endpoint, **kw), endpoint=endpoint)


def json_body(r: httpx.Response, *, endpoint: str) -> Any:
    try:
        return r.json()
    except ValueError as e:
        raise TransientSourceError(f"{endpoint} returned non-JSON body: {r.text[:200]!r}", endpoint=endpoint) from e


def retry_after(r: httpx.Response, attempt: int) -> float:
    ra = r.headers.get("Retry-After")
    return max(1.0, float(ra)) if ra and ra.isdigit() else (1.0 * (2**attempt))


def to_int(v: Any) -> int:
    """Handles 0x..., decimal strings, and native ints."""
    if isinstance(v, int):
        return v
    s = str(v).strip().lower()
    return int(s, 16) if s.startswith("0x") else int(s)
