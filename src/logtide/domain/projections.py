from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

from loguru import logger

from .errors import DecodeMismatch
from .models import DecodedEvent, DecodedParam, SinkRecord


RowFn = Callable[[DecodedEvent], Mapping[str, Any]]

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])([A-Z])")


def snake_case(name: str) -> str:
    return _CAMEL_RE.sub(r"_\1", name).lower()


def default_table(kind: str) -> str:
    return f"{snake_case(kind)}_events"


def iso_utc(seconds: int) -> str:
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _cell(p: DecodedParam) -> str:
    # lowercase hex addresses; big ints as strings, NUMERIC(78,0)-safe
    return p.as_address().lower() if p.kind == "address" else str(p.as_int())


def fixed18(numerator: int, denominator: int) -> str:
    """numerator/denominator rendered with 18 decimals using integer math only."""
    if denominator <= 0:
        return "0." + "0" * 18
    q = numerator * 10**18 // denominator
    return f"{q // 10**18}.{q % 10**18:018d}"


def generic_row(
    ev: DecodedEvent,
    *,
    renames: Mapping[str, str] | None = None,
    timestamp_param: str | None = None,
    contract_column: str | None = None,
) -> dict[str, Any]:
    """
    Flat row: block_number, every parameter under its snake_case name (or a rename),
    and event_timestamp taken from `timestamp_param` or, failing that, the block timestamp.
    """
    renames = renames or {}
    row: dict[str, Any] = {"block_number": ev.raw.block_number}
    if contract_column:
        row[contract_column] = ev.raw.address.lower()
    for p in ev.indexed + ev.body:
        if p.name == timestamp_param:
            continue
        row[renames.get(p.name, snake_case(p.name))] = _cell(p)
    if timestamp_param is not None:
        row["event_timestamp"] = iso_utc(ev.param(timestamp_param).as_int())
    elif ev.raw.block_timestamp is not None:
        row["event_timestamp"] = iso_utc(ev.raw.block_timestamp)
    return row


def uniswap_v2_swap_row(weth: str, token: str) -> RowFn:
    """
    Swap(sender, amount0In, amount1In, amount0Out, amount1Out, to) oriented by pair token order
    (token0 is the numerically smaller address).
    """
    weth_is_token0 = weth.lower() < token.lower()

    def row(ev: DecodedEvent) -> dict[str, Any]:
        if ev.raw.block_timestamp is None:
            raise DecodeMismatch(f"no block timestamp for block {ev.raw.block_number}")
        a0_in, a1_in = ev.param("amount0In").as_int(), ev.param("amount1In").as_int()
        a0_out, a1_out = ev.param("amount0Out").as_int(), ev.param("amount1Out").as_int()
        weth_in, tap_in = (a0_in, a1_in) if weth_is_token0 else (a1_in, a0_in)
        weth_out, tap_out = (a0_out, a1_out) if weth_is_token0 else (a1_out, a0_out)

        if tap_in > 0 and weth_out > 0:
            price = fixed18(weth_out, tap_in)
        elif weth_in > 0 and tap_out > 0:
            price = fixed18(weth_in, tap_out)
        else:
            price = fixed18(0, 1)

        return {
            "block_number": ev.raw.block_number,
            "sender": ev.param("sender").as_address().lower(),
            "recipient": ev.param("to").as_address().lower(),
            "amount_weth_in": str(weth_in),
            "amount_tap_in": str(tap_in),
            "amount_weth_out": str(weth_out),
            "amount_tap_out": str(tap_out),
            "price_tap_in_weth": price,
            "event_timestamp": iso_utc(ev.raw.block_timestamp),
        }
    return row


@dataclass(slots=True, frozen=True)
class TableMapping:
    table: str
    row: RowFn


@dataclass(slots=True)
class Projection:
    rows_by_table: dict[str, list[SinkRecord]] = field(default_factory=dict)
    by_kind: Counter[str] = field(default_factory=Counter)
    unknown: int = 0
    skipped: int = 0
    last_rows: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def rows(self) -> int:
        return sum(len(v) for v in self.rows_by_table.values())


class Projector:
    """Routes decoded events to tables. Kinds without an explicit mapping use generic_row."""

    def __init__(self, mappings: Mapping[str, TableMapping] | None = None) -> None:
        self.mappings = dict(mappings or {})

    def mapping_for(self, kind: str) -> TableMapping:
        m = self.mappings.get(kind)
        return m if m is not None else TableMapping(default_table(kind), generic_row)

    def project(self, decoded: Sequence[DecodedEvent | None]) -> Projection:
        out = Projection()
        for ev in decoded:
            if ev is None:
                out.unknown += 1
                continue
            m = self.mapping_for(ev.kind)
            try:
                fields = dict(m.row(ev))
            except (DecodeMismatch, KeyError, TypeError, ValueError) as e:
                out.skipped += 1
                logger.warning(
                    f"Skipping {ev.kind} log tx={ev.raw.tx_hash} idx={ev.raw.log_index}: {e}"
                )
                continue
            out.by_kind[ev.kind] += 1
            out.rows_by_table.setdefault(m.table, []).append(
                SinkRecord(ev.raw.tx_hash, ev.raw.log_index, fields)
            )
            out.last_rows[ev.kind] = fields
        return out
