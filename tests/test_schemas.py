"""Tests for event signature parsing and schema sets."""

from __future__ import annotations

import pytest

from logtide.domain.errors import ConfigurationError
from logtide.domain.schemas import SchemaSet, parse_signature

TRANSFER_TOPIC0 = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
APPROVAL_TOPIC0 = "0x8c5be1e5ebec7d5bd14f71427d1e84f3dd0314c0f7b2291e5b200ac8c7c3b925"
V2_SWAP_TOPIC0 = "0xd78ad95fa46c994b6551d0da85fc275fe613ce37657fb8d5e3d130840159d822"
V3_SWAP_TOPIC0 = "0xc42079f94a6350d7e6235f29174924f928cc2ac818eb64fed8004e115fbcca67"


def test_named_signature_hashes_to_canonical_topic0() -> None:
    s = parse_signature("Transfer(address indexed from, address indexed to, uint256 amount)")

    assert s.signature == "Transfer(address,address,uint256)"
    assert s.topic0 == TRANSFER_TOPIC0
    assert [p.name for p in s.indexed] == ["from", "to"]
    assert [p.name for p in s.body] == ["amount"]


@pytest.mark.parametrize(
    "sig, topic0",
    [
        ("Approval(address indexed owner, address indexed spender, uint256 amount)", APPROVAL_TOPIC0),
        (
            "Swap(address indexed sender, uint256 amount0In, uint256 amount1In, "
            "uint256 amount0Out, uint256 amount1Out, address indexed to)",
            V2_SWAP_TOPIC0,
        ),
        (
            "Swap(address indexed sender, address indexed recipient, int256 amount0, int256 amount1, "
            "uint160 sqrtPriceX96, uint128 liquidity, int24 tick)",
            V3_SWAP_TOPIC0,
        ),
    ],
)
def test_well_known_topic0s(sig: str, topic0: str) -> None:
    assert parse_signature(sig).topic0 == topic0


def test_unnamed_params_get_positional_names() -> None:
    s = parse_signature("Transfer(address,address,uint256)")
    assert [p.name for p in s.params] == ["arg0", "arg1", "arg2"]
    assert s.topic0 == TRANSFER_TOPIC0


def test_unannotated_layout_follows_topic_count() -> None:
    s = parse_signature("Transfer(address,address,uint256)")
    indexed, body = s.layout(3)
    assert [p.name for p in indexed] == ["arg0", "arg1"]
    assert [p.name for p in body] == ["arg2"]

    # ERC-721 style: every parameter sits in a topic
    indexed, body = s.layout(4)
    assert len(indexed) == 3 and body == ()

    indexed, body = s.layout(1)
    assert indexed == () and len(body) == 3


def test_annotated_layout_ignores_topic_count() -> None:
    s = parse_signature("Transfer(address indexed from, address indexed to, uint256 amount)")
    assert s.layout(1) == s.layout(3) == (s.indexed, s.body)
    assert [p.name for p in s.indexed] == ["from", "to"]


def test_bare_int_defaults_to_256_bits() -> None:
    s = parse_signature("Ping(uint a, int b)")
    assert [(p.kind, p.bits) for p in s.params] == [("uint", 256), ("int", 256)]
    assert s.signature == "Ping(uint256,int256)"


@pytest.mark.parametrize(
    "sig",
    [
        "Broken(",
        "Bad(bytes32 x)",
        "Bad(uint7 x)",
        "Bad(uint512 x)",
        "Bad(address indexed a, address indexed b, address indexed c, address indexed d)",
        "Bad(uint256 a b)",
    ],
)
def test_invalid_signatures_are_configuration_errors(sig: str) -> None:
    with pytest.raises(ConfigurationError):
        parse_signature(sig)


def test_schema_set_lookup_is_case_insensitive() -> None:
    ss = SchemaSet.from_signatures(["Transfer(address indexed from, address indexed to, uint256 amount)"])

    assert len(ss) == 1
    assert ss.get(TRANSFER_TOPIC0.upper().replace("0X", "0x")).name == "Transfer"
    assert ss.get(APPROVAL_TOPIC0) is None
    assert ss.get(None) is None


def test_schema_set_rejects_conflicting_layouts_for_one_topic0() -> None:
    with pytest.raises(ConfigurationError):
        SchemaSet.from_signatures([
            "Transfer(address indexed from, address indexed to, uint256 amount)",
            "Transfer(address from, address to, uint256 amount)",
        ])
