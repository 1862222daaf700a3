"""Shared test fixtures and sample data."""
from __future__ import annotations

import textwrap
from collections.abc import Callable
from decimal import Decimal
from pathlib import Path

import pytest

from vesu_liquidator.config import (
    AppConfig,
    AssetInfo,
    ChainConfig,
    EngineConfig,
    LiquidationConfig,
    OracleConfig,
    PairConfig,
    PoolConfig,
    PragmaConfig,
    RetryConfig,
    ThresholdsConfig,
)
from vesu_liquidator.events import EngineEvent, EventEmitter, EventType
from vesu_liquidator.models import AssetConfig, Position, PositionRef, PricePoint

NOW = 1_700_000_000

ETH_ADDRESS = "0x49d36570d4e46f48e99674bd3fcc84644ddd6b96f7c741b1562b82f9e004dc7"
USDC_ADDRESS = "0x53c91253bc9682c04929ca02ed00b3e423f6710d2ee7e0d5ebb06f3ecf368a8"
STRK_ADDRESS = "0x4718f5a0fc34cc1af16a1cdee98ffb20c31f5cd61d6ab07201858f4287c938d"
POOL_ADDRESS = "0x451fe483d5921a2919ddd81d0de6696669bccdacd859f72a4fba7656b97c3b5"
USER = "0xabc123"


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_thresholds() -> ThresholdsConfig:
    return ThresholdsConfig(
        healthy=Decimal("1.2"), critical=Decimal("1.05"), liquidatable=Decimal("1.0")
    )


@pytest.fixture()
def sample_chain_config() -> ChainConfig:
    return ChainConfig(
        rpc_endpoints=("https://rpc1.example.com", "https://rpc2.example.com"),
        rpc_timeout=10,
    )


@pytest.fixture()
def sample_pair() -> PairConfig:
    return PairConfig(
        collateral="ETH",
        debt="USDC",
        collateral_factor=Decimal("0.80"),
        liquidation_bonus=Decimal("0.05"),
        partial_liquidation=False,
    )


@pytest.fixture()
def sample_liquidation_config() -> LiquidationConfig:
    return LiquidationConfig(
        liquidator_address="0x1111",
        liquidator_contract="0x2222",
        swap_router="0x3333",
        slippage_tolerance=Decimal("0"),
        min_profit_usd=Decimal("1"),
        flash_loan_fee_rate=Decimal("0"),
        gas_cost_usd=Decimal("0.5"),
        dust_threshold_usd=Decimal("10"),
        target_health_factor=Decimal("1.001"),
        fee_token="STRK",
    )


@pytest.fixture()
def sample_app_config(
    sample_thresholds: ThresholdsConfig,
    sample_chain_config: ChainConfig,
    sample_pair: PairConfig,
    sample_liquidation_config: LiquidationConfig,
) -> AppConfig:
    return AppConfig(
        engine=EngineConfig(max_concurrency=1, plan_max_age_seconds=30.0),
        thresholds=sample_thresholds,
        chain=sample_chain_config,
        oracle=OracleConfig(
            pragma=PragmaConfig(
                address="0x2a85",
                pair_ids={"ETH": "ETH/USD", "USDC": "USDC/USD", "STRK": "STRK/USD"},
            )
        ),
        assets={
            "ETH": AssetInfo(address=ETH_ADDRESS, decimals=18),
            "USDC": AssetInfo(address=USDC_ADDRESS, decimals=6),
            "STRK": AssetInfo(address=STRK_ADDRESS, decimals=18),
        },
        pools={"prime": PoolConfig(address=POOL_ADDRESS, pairs=(sample_pair,))},
        liquidation=sample_liquidation_config,
        retry=RetryConfig(max_attempts=2, base_delay_seconds=0.0, max_delay_seconds=0.0),
    )


# ---------------------------------------------------------------------------
# Model fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def eth_config() -> AssetConfig:
    """Collateral share rate 1: one share is one ETH."""
    return AssetConfig(
        total_collateral_shares=Decimal("1000"),
        total_nominal_debt=Decimal("0"),
        reserve=Decimal("1000"),
        max_utilization=Decimal("0.9"),
        fee_rate=Decimal("0"),
        last_rate_accumulator=Decimal("1"),
        last_updated=NOW,
        decimals=18,
    )


@pytest.fixture()
def usdc_config() -> AssetConfig:
    return AssetConfig(
        total_collateral_shares=Decimal("100000"),
        total_nominal_debt=Decimal("50000"),
        reserve=Decimal("50000"),
        max_utilization=Decimal("0.9"),
        fee_rate=Decimal("0"),
        last_rate_accumulator=Decimal("1"),
        last_updated=NOW,
        decimals=6,
    )


@pytest.fixture()
def sample_ref() -> PositionRef:
    return PositionRef(pool_id="prime", collateral_asset="ETH", debt_asset="USDC", user=USER)


@pytest.fixture()
def sample_position(sample_ref: PositionRef) -> Position:
    """1.5 ETH collateral against 2,100 USDC debt."""
    return Position(
        ref=sample_ref,
        collateral_shares=Decimal("1.5"),
        nominal_debt=Decimal("2100"),
        last_block=100,
    )


@pytest.fixture()
def make_price() -> Callable[..., PricePoint]:
    def _make(asset: str, price: str | Decimal, age: int = 0, sources: int = 5) -> PricePoint:
        return PricePoint(
            asset=asset,
            price=Decimal(price),
            decimals=8,
            last_updated=NOW - age,
            num_sources=sources,
            source="pragma",
        )

    return _make


# ---------------------------------------------------------------------------
# Config YAML fixture
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent("""\
    engine:
      tick_interval_seconds: 6
      max_concurrency: 2
    chain:
      rpc_endpoints: ["https://rpc.example.com"]
      rpc_timeout: 10
    oracle:
      staleness_tolerance_seconds: 300
      pragma:
        address: "0x2a85"
        pair_ids: {ETH: ETH/USD, USDC: USDC/USD}
      pyth:
        enabled: true
        feeds: {ETH: "aaa", USDC: "bbb"}
    assets:
      ETH: {address: "0x49d3", decimals: 18}
      USDC: {address: "0x53c9", decimals: 6}
    pools:
      prime:
        address: "0x451f"
        pairs:
          - collateral: ETH
            debt: USDC
            collateral_factor: 0.80
            liquidation_bonus: 0.05
    liquidation:
      liquidator_address: "0x1111"
      slippage_tolerance: 0.01
      min_profit_usd: 2.5
    store:
      checkpoint_path: data/checkpoint.json
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file


# ---------------------------------------------------------------------------
# Event fixtures
# ---------------------------------------------------------------------------


class RecordingSink:
    """Collects emitted events for assertions."""

    def __init__(self) -> None:
        self.events: list[EngineEvent] = []

    def emit(self, event: EngineEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[EngineEvent]:
        return [e for e in self.events if e.type is event_type]


@pytest.fixture()
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def emitter(recording_sink: RecordingSink) -> EventEmitter:
    return EventEmitter([recording_sink])
