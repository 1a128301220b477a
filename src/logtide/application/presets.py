# logtide/application/presets.py
from __future__ import annotations

from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Mapping, Sequence

from ..domain.errors import ConfigurationError, FatalQueryError
from ..domain.models import FilterClause, LogFilter, address_topic, normalize_address
from ..domain.projections import Projector, TableMapping, generic_row, uniswap_v2_swap_row
from ..domain.schemas import SchemaSet


@dataclass(slots=True, frozen=True)
class PresetOptions:
    contracts: tuple[str, ...] = ()
    target_address: str | None = None
    token_a: str | None = None          # WETH side of a V2 pair
    token_b: str | None = None          # the other token


@dataclass(slots=True, frozen=True)
class Pipeline:
    name: str
    schemas: SchemaSet
    log_filter: LogFilter
    projector: Projector

    @property
    def tables(self) -> list[str]:
        return sorted({self.projector.mapping_for(s.name).table for s in self.schemas})


@dataclass(slots=True, frozen=True)
class Preset:
    name: str
    summary: str
    signatures: tuple[str, ...]
    network: str
    contracts: tuple[str, ...]
    start_block: int
    build: Callable[["Preset", PresetOptions], Pipeline]
    defaults: Mapping[str, str] = field(default_factory=dict)

    def schemas(self) -> SchemaSet:
        return SchemaSet.from_signatures(self.signatures)

    def pipeline(self, opts: PresetOptions) -> Pipeline:
        try:
            return self.build(self, opts)
        except FatalQueryError as e:
            raise ConfigurationError(f"preset {self.name}: {e}") from e


def _contracts(p: Preset, opts: PresetOptions) -> tuple[str, ...]:
    return opts.contracts or p.contracts


def _single_clause(p: Preset, opts: PresetOptions, schemas: SchemaSet) -> LogFilter:
    return LogFilter((FilterClause(addresses=_contracts(p, opts), topics=(tuple(schemas.topic0s()),)),))


def _build_last_tap(p: Preset, opts: PresetOptions) -> Pipeline:
    schemas = p.schemas()
    row = partial(generic_row, timestamp_param="timestamp", renames={"tapper": "tapper_address", "winner": "winner_address"})
    projector = Projector({
        "Tapped": TableMapping("tapped_events", row),
        "RoundEnded": TableMapping("round_ended_events", row),
    })
    return Pipeline(p.name, schemas, _single_clause(p, opts, schemas), projector)


def _build_uniswap_v2(p: Preset, opts: PresetOptions) -> Pipeline:
    schemas = p.schemas()
    weth = normalize_address(opts.token_a or p.defaults["token_a"])
    token = normalize_address(opts.token_b or p.defaults["token_b"])
    projector = Projector({"Swap": TableMapping("swap_events", uniswap_v2_swap_row(weth, token))})
    return Pipeline(p.name, schemas, _single_clause(p, opts, schemas), projector)


def _build_uniswap_v3(p: Preset, opts: PresetOptions) -> Pipeline:
    schemas = p.schemas()
    row = partial(generic_row, contract_column="pool_address")
    projector = Projector({"Swap": TableMapping("uniswap_v3_swaps", row)})
    return Pipeline(p.name, schemas, _single_clause(p, opts, schemas), projector)


def _build_erc20_approvals(p: Preset, opts: PresetOptions) -> Pipeline:
    schemas = p.schemas()
    target = opts.target_address or p.defaults.get("target_address")
    if not target:
        raise ConfigurationError("erc20-approvals needs a target address")
    by_name = {s.name: s.topic0 for s in schemas}
    padded = address_topic(target)
    contracts = _contracts(p, opts)
    # owner == target, from == target, to == target
    clauses = (
        FilterClause(addresses=contracts, topics=((by_name["Approval"],), (padded,))),
        FilterClause(addresses=contracts, topics=((by_name["Transfer"],), (padded,))),
        FilterClause(addresses=contracts, topics=((by_name["Transfer"],), (), (padded,))),
    )
    row = partial(generic_row, contract_column="token_address", renames={"from": "from_address", "to": "to_address"})
    projector = Projector({
        "Transfer": TableMapping("erc20_transfers", row),
        "Approval": TableMapping("erc20_approvals", row),
    })
    return Pipeline(p.name, schemas, LogFilter(clauses), projector)


PRESETS: dict[str, Preset] = {p.name: p for p in (
    Preset(
        name="last-tap",
        summary="Last Tap game: Tapped and RoundEnded into tapped_events / round_ended_events",
        signatures=(
            "Tapped(address indexed tapper, uint256 roundNumber, uint256 tapCostPaid, uint256 timestamp)",
            "RoundEnded(address indexed winner, uint256 prizeAmount, uint256 roundNumber, uint256 timestamp)",
        ),
        network="megaethTestnet",
        contracts=("0x16ED00aC93b37B7481eD3CCfa2a87C342aCB816C",),
        start_block=3_258_331,
        build=_build_last_tap,
    ),
    Preset(
        name="uniswap-v2",
        summary="Uniswap V2 pair swaps oriented WETH/TAP with a fixed-point price into swap_events",
        signatures=(
            "Swap(address indexed sender, uint256 amount0In, uint256 amount1In, uint256 amount0Out, uint256 amount1Out, address indexed to)",
        ),
        network="megaethTestnet",
        contracts=("0x9f6A232C454743a31512C01FcD4A9873BDb3df71",),
        start_block=3_507_082,
        build=_build_uniswap_v2,
        defaults={
            "token_a": "0x4eB2Bd7beE16F38B1F4a0A5796Fffd028b6040e9",
            "token_b": "0xAb0d0B32dadAbcADD74aF2E87593c920C3070a81",
        },
    ),
    Preset(
        name="uniswap-v3",
        summary="Uniswap V3 pool swaps (any pool unless contracts are given) into uniswap_v3_swaps",
        signatures=(
            "Swap(address indexed sender, address indexed recipient, int256 amount0, int256 amount1, uint160 sqrtPriceX96, uint128 liquidity, int24 tick)",
        ),
        network="unichain",
        contracts=(),
        start_block=0,
        build=_build_uniswap_v3,
    ),
    Preset(
        name="erc20-approvals",
        summary="ERC-20 Approval/Transfer touching one address into erc20_approvals / erc20_transfers",
        signatures=(
            "Transfer(address indexed from, address indexed to, uint256 amount)",
            "Approval(address indexed owner, address indexed spender, uint256 amount)",
        ),
        network="ethereum",
        contracts=(),
        start_block=0,
        build=_build_erc20_approvals,
        defaults={"target_address": "0x3EA751a05922A663AeabFA05a014daf8643D4a3D"},
    ),
)}


def get_preset(name: str) -> Preset:
    try:
        return PRESETS[name]
    except KeyError:
        raise ConfigurationError(f"unknown preset {name!r}; choose from {', '.join(sorted(PRESETS))}") from None


def custom_pipeline(signatures: Sequence[str], opts: PresetOptions, *, name: str = "custom") -> Pipeline:
    """Ad-hoc pipeline: every signature into `<snake_name>_events` with the generic row layout."""
    if not signatures:
        raise ConfigurationError("no event signatures given")
    try:
        schemas = SchemaSet.from_signatures(signatures)
        log_filter = LogFilter((FilterClause(addresses=opts.contracts, topics=(tuple(schemas.topic0s()),)),))
    except FatalQueryError as e:
        raise ConfigurationError(str(e)) from e
    return Pipeline(name, schemas, log_filter, Projector())
