from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping, Union
from .errors import FatalQueryError
from .value_types import Address, Health, ParamKind, Topic, TxHash

if TYPE_CHECKING:
    from .schemas import EventSchema

_HEX = set("0123456789abcdef")


def _is_hex(s: str, nbytes: int) -> bool:
    return s.startswith("0x") and len(s) == 2 + 2 * nbytes and set(s[2:]) <= _HEX


def normalize_topic(value: str) -> Topic:
    s = str(value).strip().lower()
    if not s.startswith("0x"):
        s = "0x" + s
    if not _is_hex(s, 32):
        raise FatalQueryError(f"Invalid topic value: {value!r}")
    return Topic(s)


def normalize_address(value: str) -> Address:
    s = str(value).strip().lower()
    if not s.startswith("0x"):
        s = "0x" + s
    if not _is_hex(s, 20):
        raise FatalQueryError(f"Invalid address: {value!r}")
    return Address(s)


def address_topic(address: str) -> Topic:
    """Left-pad an address to the 32-byte form it takes in an indexed topic slot."""
    return Topic("0x" + "0" * 24 + normalize_address(address)[2:])


@dataclass(slots=True, frozen=True)
class RawLogRecord:
    block_number: int
    tx_hash: TxHash
    log_index: int
    address: Address
    topics: tuple[Topic, ...]           # topic0 first, at most four
    data_hex: str                       # hex with 0x (or "0x")
    block_timestamp: int | None = None

    @property
    def topic0(self) -> Topic | None:
        return self.topics[0] if self.topics else None

    @property
    def natural_key(self) -> tuple[str, int]:
        return (self.tx_hash, self.log_index)


@dataclass(slots=True, frozen=True)
class DecodedParam:
    name: str
    kind: ParamKind
    bits: int
    value: int | str                    # int for uint/int, checksum str for address

    def as_int(self) -> int:
        if self.kind == "address" or not isinstance(self.value, int):
            raise TypeError(f"parameter {self.name!r} is an {self.kind}, not an integer")
        return self.value

    def as_address(self) -> str:
        if self.kind != "address" or not isinstance(self.value, str):
            raise TypeError(f"parameter {self.name!r} is a {self.kind}{self.bits}, not an address")
        return self.value


@dataclass(slots=True, frozen=True)
class DecodedEvent:
    kind: str
    schema: "EventSchema"
    indexed: tuple[DecodedParam, ...]
    body: tuple[DecodedParam, ...]
    raw: RawLogRecord

    def param(self, name: str) -> DecodedParam:
        for p in self.indexed + self.body:
            if p.name == name:
                return p
        raise KeyError(f"{self.kind} has no parameter {name!r}")


@dataclass(slots=True, frozen=True)
class FilterClause:
    """
    One log selection. Addresses OR-ed; each topic position is a set of values OR-ed;
    positions are AND-ed. An empty tuple (or a missing position) matches anything.
    """
    addresses: tuple[Address, ...] = ()
    topics: tuple[tuple[Topic, ...], ...] = ()

    def __post_init__(self) -> None:
        if len(self.topics) > 4:
            raise FatalQueryError(f"at most 4 topic positions allowed, got {len(self.topics)}")
        object.__setattr__(self, "addresses", tuple(normalize_address(a) for a in self.addresses))
        object.__setattr__(self, "topics", tuple(tuple(normalize_topic(t) for t in pos) for pos in self.topics))

    def topics_param(self) -> list[list[str]]:
        """Nested-array form used on the wire; trailing wildcards are trimmed."""
        out = [list(pos) for pos in self.topics]
        while out and not out[-1]:
            out.pop()
        return out

    def matches(self, rec: RawLogRecord) -> bool:
        if self.addresses and rec.address not in self.addresses:
            return False
        for i, pos in enumerate(self.topics):
            if not pos:
                continue
            if i >= len(rec.topics) or rec.topics[i] not in pos:
                return False
        return True


@dataclass(slots=True, frozen=True)
class LogFilter:
    clauses: tuple[FilterClause, ...]

    def __post_init__(self) -> None:
        if not self.clauses:
            raise FatalQueryError("log filter needs at least one clause")

    def matches(self, rec: RawLogRecord) -> bool:
        return any(c.matches(rec) for c in self.clauses)


@dataclass(slots=True, frozen=True)
class Batch:
    records: tuple[RawLogRecord, ...]
    next_block: int                     # resume here; data below it was delivered
    chain_height: int | None = None


@dataclass(slots=True, frozen=True)
class EndOfRange:
    next_block: int
    chain_height: int | None = None


StreamItem = Union[Batch, EndOfRange]


@dataclass(slots=True, frozen=True)
class IngestionCursor:
    next_block: int
    endpoint_in_use: str | None
    last_advanced_at: datetime | None


@dataclass(slots=True, frozen=True)
class SinkRecord:
    tx_hash: str
    log_index: int
    fields: Mapping[str, Any] = field(default_factory=dict)

    @property
    def natural_key(self) -> tuple[str, int]:
        return (self.tx_hash, self.log_index)

    def as_row(self) -> dict[str, Any]:
        row = dict(self.fields)
        row["transaction_hash"] = self.tx_hash
        row["log_index"] = self.log_index
        return row


@dataclass(slots=True, frozen=True)
class EndpointDescriptor:
    name: str
    url: str
    bearer_token: str | None = field(default=None, repr=False)
    health: Health = "unknown"


@dataclass(slots=True, frozen=True)
class UpsertResult:
    table: str
    rows: int
    ok: bool
    attempts: int
    error: str | None = None
