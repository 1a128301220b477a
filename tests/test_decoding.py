"""Tests for log classification and word-level decoding."""

from __future__ import annotations

import pytest
from eth_utils import to_checksum_address

from factories import ALICE, APPROVAL_SIG, BOB, TRANSFER_SIG, approval_log, data, make_log, transfer_log, word
from logtide.domain.decoding import decode
from logtide.domain.models import address_topic
from logtide.domain.schemas import SchemaSet

V3_SWAP = (
    "Swap(address indexed sender, address indexed recipient, int256 amount0, int256 amount1, "
    "uint160 sqrtPriceX96, uint128 liquidity, int24 tick)"
)


@pytest.fixture
def erc20() -> SchemaSet:
    return SchemaSet.from_signatures([TRANSFER_SIG, APPROVAL_SIG])


def test_transfer_decodes_indexed_and_body_params(erc20: SchemaSet) -> None:
    big = 2**200 + 7
    [ev] = decode([transfer_log(big)], erc20)

    assert ev is not None
    assert ev.kind == "Transfer"
    assert len(ev.indexed) == 2 and len(ev.body) == 1
    assert ev.param("from").as_address() == to_checksum_address(ALICE)
    assert ev.param("to").as_address() == to_checksum_address(BOB)
    assert ev.param("amount").as_int() == big


def test_canonical_signature_takes_indexed_params_from_topics() -> None:
    ss = SchemaSet.from_signatures(["Transfer(address,address,uint256)"])
    [ev] = decode([transfer_log(42)], ss)

    assert ev is not None
    assert [p.name for p in ev.indexed] == ["arg0", "arg1"]
    assert [p.name for p in ev.body] == ["arg2"]
    assert ev.param("arg0").as_address() == to_checksum_address(ALICE)
    assert ev.param("arg2").as_int() == 42


def test_output_keeps_length_and_order_with_unknown_records(erc20: SchemaSet) -> None:
    unknown = make_log("Other(uint256 x)", body=data(1), log_index=1)
    records = [transfer_log(log_index=0), unknown, approval_log(log_index=2)]

    out = decode(records, erc20)

    assert len(out) == 3
    assert out[0] is not None and out[0].kind == "Transfer"
    assert out[1] is None
    assert out[2] is not None and out[2].kind == "Approval"


def test_short_payload_only_nulls_the_bad_record(erc20: SchemaSet) -> None:
    good = approval_log(7, log_index=0)
    bad = make_log(APPROVAL_SIG, indexed=(address_topic(ALICE), address_topic(BOB)), body="0x" + word(7)[:40], log_index=1)

    out = decode([bad, good], erc20)

    assert out[0] is None
    assert out[1] is not None
    assert out[1].param("amount").as_int() == 7


def test_topic_count_mismatch_is_unknown(erc20: SchemaSet) -> None:
    rec = make_log(TRANSFER_SIG, indexed=(address_topic(ALICE),), body=data(1))
    assert decode([rec], erc20) == [None]


def test_dirty_address_word_is_unknown(erc20: SchemaSet) -> None:
    dirty = "0x" + "ff" * 12 + ALICE[2:]
    rec = make_log(TRANSFER_SIG, indexed=(dirty, address_topic(BOB)), body=data(1))
    assert decode([rec], erc20) == [None]


def test_signed_values_are_sign_extended() -> None:
    ss = SchemaSet.from_signatures([V3_SWAP])
    rec = make_log(
        V3_SWAP,
        indexed=(address_topic(ALICE), address_topic(BOB)),
        body=data(-(10**18), 2 * 10**6, 2**96, 10**20, -887_272),
    )

    [ev] = decode([rec], ss)

    assert ev is not None
    assert ev.param("amount0").as_int() == -(10**18)
    assert ev.param("amount1").as_int() == 2 * 10**6
    assert ev.param("tick").as_int() == -887_272
    assert ev.param("tick").bits == 24


def test_non_canonical_narrow_int_is_unknown() -> None:
    ss = SchemaSet.from_signatures(["Tick(int24 tick)"])
    # 0x00..fffff0 is positive and above int24 max: not a sign extension
    assert decode([make_log("Tick(int24 tick)", body=data(0xFFFFF0))], ss) == [None]


def test_uint_over_declared_width_is_unknown() -> None:
    ss = SchemaSet.from_signatures(["Small(uint8 v)"])
    ok, bad = make_log("Small(uint8 v)", body=data(255)), make_log("Small(uint8 v)", body=data(256), log_index=1)

    out = decode([ok, bad], ss)

    assert out[0] is not None and out[0].param("v").as_int() == 255
    assert out[1] is None


def test_param_accessors_check_the_tag(erc20: SchemaSet) -> None:
    [ev] = decode([transfer_log()], erc20)
    assert ev is not None
    with pytest.raises(TypeError):
        ev.param("amount").as_address()
    with pytest.raises(TypeError):
        ev.param("from").as_int()
    with pytest.raises(KeyError):
        ev.param("nope")
