from __future__ import annotations

from typing import Sequence

from eth_utils import to_checksum_address
from loguru import logger

from .errors import DecodeMismatch
from .models import DecodedEvent, DecodedParam, RawLogRecord
from .schemas import EventSchema, ParamSpec, SchemaSet


# --------- 32B word slicing (fast, no eth_abi) --------------------------------
def _word(b: bytes, i: int) -> bytes:
    return b[i*32:(i+1)*32]

def _u256(w: bytes) -> int:
    return int.from_bytes(w, "big")

def _hex_bytes(s: str) -> bytes:
    h = s[2:] if s[:2].lower() == "0x" else s
    if len(h) % 2: h = "0" + h
    try:
        return bytes.fromhex(h) if h else b""
    except ValueError as e:
        raise DecodeMismatch(f"payload is not hex: {e}") from e


def _decode_word(w: bytes, ps: ParamSpec) -> DecodedParam:
    """Interpret one 32-byte word strictly; out-of-range encodings are mismatches, not clamps."""
    if len(w) != 32:
        raise DecodeMismatch(f"{ps.name}: expected 32 bytes, got {len(w)}")
    raw = _u256(w)
    if ps.kind == "address":
        if raw >> 160:
            raise DecodeMismatch(f"{ps.name}: dirty high bytes in address word")
        return DecodedParam(ps.name, "address", 160, to_checksum_address("0x" + w[-20:].hex()))
    if ps.kind == "uint":
        if raw >> ps.bits:
            raise DecodeMismatch(f"{ps.name}: value exceeds uint{ps.bits}")
        return DecodedParam(ps.name, "uint", ps.bits, raw)
    # signed: two's complement over 256 bits, must be a sign extension of intN
    v = raw - (1 << 256) if raw >> 255 else raw
    lo, hi = -(1 << (ps.bits - 1)), (1 << (ps.bits - 1)) - 1
    if not lo <= v <= hi:
        raise DecodeMismatch(f"{ps.name}: value out of int{ps.bits} range")
    return DecodedParam(ps.name, "int", ps.bits, v)


def decode_one(rec: RawLogRecord, schema: EventSchema) -> DecodedEvent:
    """Decode a record known to carry schema's topic0. Raises DecodeMismatch."""
    idx_specs, body_specs = schema.layout(len(rec.topics))
    if len(rec.topics) != 1 + len(idx_specs):
        raise DecodeMismatch(f"{schema.name}: expected {1 + len(idx_specs)} topics, got {len(rec.topics)}")
    indexed = tuple(_decode_word(_hex_bytes(t), s) for t, s in zip(rec.topics[1:], idx_specs))
    data = _hex_bytes(rec.data_hex)
    if len(data) < 32 * len(body_specs):
        raise DecodeMismatch(f"{schema.name}: data has {len(data)} bytes, need {32 * len(body_specs)}")
    body = tuple(_decode_word(_word(data, i), s) for i, s in enumerate(body_specs))
    return DecodedEvent(kind=schema.name, schema=schema, indexed=indexed, body=body, raw=rec)


def decode(records: Sequence[RawLogRecord], schemas: SchemaSet) -> list[DecodedEvent | None]:
    """
    Same length and order as `records`. None marks an Unknown record: topic0 matches
    no schema, or the record does not fit the schema it claims.
    """
    out: list[DecodedEvent | None] = []
    for rec in records:
        schema = schemas.get(rec.topic0)
        if schema is None:
            out.append(None)
            continue
        try:
            out.append(decode_one(rec, schema))
        except DecodeMismatch as e:
            logger.debug(f"undecodable log blk={rec.block_number} tx={rec.tx_hash} idx={rec.log_index}: {e}")
            out.append(None)
    return out
