from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Iterator, Sequence

from eth_utils import keccak

from .errors import ConfigurationError
from .value_types import ParamKind, Topic


_SIG_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*\((.*)\)\s*$")
_INT_RE = re.compile(r"^(u?int)(\d*)$")


@dataclass(slots=True, frozen=True)
class ParamSpec:
    name: str
    kind: ParamKind
    bits: int
    indexed: bool

    @property
    def abi_type(self) -> str:
        return "address" if self.kind == "address" else f"{self.kind}{self.bits}"


@dataclass(slots=True, frozen=True)
class EventSchema:
    name: str
    params: tuple[ParamSpec, ...]

    @property
    def signature(self) -> str:
        """Canonical form hashed into topic0, e.g. Transfer(address,address,uint256)."""
        return f"{self.name}({','.join(p.abi_type for p in self.params)})"

    @property
    def topic0(self) -> Topic:
        return Topic("0x" + keccak(text=self.signature).hex().removeprefix("0x"))

    @property
    def indexed(self) -> tuple[ParamSpec, ...]:
        return tuple(p for p in self.params if p.indexed)

    @property
    def body(self) -> tuple[ParamSpec, ...]:
        return tuple(p for p in self.params if not p.indexed)

    def layout(self, n_topics: int) -> tuple[tuple[ParamSpec, ...], tuple[ParamSpec, ...]]:
        """
        (indexed, body) for a log carrying `n_topics` topics. Without any `indexed` marker the
        leading parameters fill the topic slots after topic0, as in an unannotated ABI.
        """
        if any(p.indexed for p in self.params) or n_topics < 1:
            return self.indexed, self.body
        n = min(n_topics - 1, 3, len(self.params))
        return self.params[:n], self.params[n:]


def _parse_type(t: str, sig: str) -> tuple[ParamKind, int]:
    if t == "address":
        return "address", 160
    m = _INT_RE.match(t)
    if m:
        bits = int(m.group(2)) if m.group(2) else 256
        if bits % 8 or not 8 <= bits <= 256:
            raise ConfigurationError(f"invalid integer width {t!r} in {sig!r}")
        return ("uint" if m.group(1) == "uint" else "int"), bits
    raise ConfigurationError(f"unsupported parameter type {t!r} in {sig!r} (only uintN, intN and address)")


def parse_signature(sig: str) -> EventSchema:
    """
    Parse the human-readable form: ``Swap(address indexed sender, uint256 amount0In, ...)``.
    Unnamed parameters get positional names (arg0, arg1, ...).
    """
    m = _SIG_RE.match(sig)
    if not m:
        raise ConfigurationError(f"malformed event signature: {sig!r}")
    name, inner = m.group(1), m.group(2).strip()
    params: list[ParamSpec] = []
    if inner:
        for i, part in enumerate(inner.split(",")):
            tokens = part.split()
            if not tokens:
                raise ConfigurationError(f"empty parameter in {sig!r}")
            kind, bits = _parse_type(tokens[0], sig)
            rest = tokens[1:]
            indexed = bool(rest) and rest[0] == "indexed"
            if indexed:
                rest = rest[1:]
            if len(rest) > 1:
                raise ConfigurationError(f"cannot parse parameter {part.strip()!r} in {sig!r}")
            params.append(ParamSpec(rest[0] if rest else f"arg{i}", kind, bits, indexed))
    if sum(p.indexed for p in params) > 3:
        raise ConfigurationError(f"more than 3 indexed parameters in {sig!r}")
    return EventSchema(name, tuple(params))


class SchemaSet:
    """Known event schemas keyed by topic0."""

    def __init__(self, schemas: Iterable[EventSchema]) -> None:
        self._by_topic: dict[Topic, EventSchema] = {}
        for s in schemas:
            t0 = s.topic0
            if t0 in self._by_topic and self._by_topic[t0] != s:
                raise ConfigurationError(
                    f"schemas {self._by_topic[t0].name!r} and {s.name!r} share topic0 {t0} "
                    "with different indexed layouts"
                )
            self._by_topic[t0] = s

    @classmethod
    def from_signatures(cls, sigs: Sequence[str]) -> "SchemaSet":
        return cls(parse_signature(s) for s in sigs)

    def get(self, topic0: str | None) -> EventSchema | None:
        if topic0 is None:
            return None
        return self._by_topic.get(Topic(topic0.lower()))

    def topic0s(self) -> list[Topic]:
        return list(self._by_topic)

    def __iter__(self) -> Iterator[EventSchema]:
        return iter(self._by_topic.values())

    def __len__(self) -> int:
        return len(self._by_topic)
