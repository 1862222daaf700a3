"""Configuration loader: reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineConfig:
    tick_interval_seconds: float = 12.0
    price_poll_seconds: float = 3.0
    price_move_trigger_pct: Decimal = Decimal("2")
    trigger_on_new_block: bool = True
    max_concurrency: int = 1
    plan_max_age_seconds: float = 30.0
    asset_config_ttl_seconds: float = 12.0
    call_timeout_seconds: float = 10.0


@dataclass(frozen=True)
class ThresholdsConfig:
    healthy: Decimal = Decimal("1.2")
    critical: Decimal = Decimal("1.05")
    liquidatable: Decimal = Decimal("1.0")


@dataclass(frozen=True)
class ChainConfig:
    rpc_endpoints: tuple[str, ...] = ()
    rpc_timeout: int = 30
    poll_interval_seconds: float = 6.0
    event_chunk_size: int = 500
    start_block: int = 0


@dataclass(frozen=True)
class PragmaConfig:
    address: str = ""
    pair_ids: dict[str, str] = field(default_factory=dict)
    min_sources: int = 3


@dataclass(frozen=True)
class PythConfig:
    enabled: bool = False
    hermes_url: str = "https://hermes.pyth.network/v2/updates/price/latest"
    feeds: dict[str, str] = field(default_factory=dict)
    min_sources: int = 1


@dataclass(frozen=True)
class OracleConfig:
    staleness_tolerance_seconds: int = 300
    cache_ttl_seconds: float = 12.0
    pragma: PragmaConfig = field(default_factory=PragmaConfig)
    pyth: PythConfig = field(default_factory=PythConfig)


@dataclass(frozen=True)
class AssetInfo:
    address: str = ""
    decimals: int = 18


@dataclass(frozen=True)
class PairConfig:
    collateral: str = ""
    debt: str = ""
    collateral_factor: Decimal = Decimal("0.8")
    liquidation_bonus: Decimal = Decimal("0.05")
    partial_liquidation: bool = True


@dataclass(frozen=True)
class PoolConfig:
    address: str = ""
    pairs: tuple[PairConfig, ...] = ()

    def pair(self, collateral: str, debt: str) -> PairConfig | None:
        for p in self.pairs:
            if p.collateral == collateral and p.debt == debt:
                return p
        return None


@dataclass(frozen=True)
class LiquidationConfig:
    liquidator_address: str = ""
    liquidator_contract: str = ""
    swap_router: str = ""
    slippage_tolerance: Decimal = Decimal("0.005")
    min_profit_usd: Decimal = Decimal("1")
    flash_loan_fee_rate: Decimal = Decimal("0")
    gas_cost_usd: Decimal = Decimal("0.5")
    dust_threshold_usd: Decimal = Decimal("10")
    target_health_factor: Decimal = Decimal("1.001")
    fee_token: str = "STRK"
    confirmation_timeout_seconds: float = 120.0
    unresolved_hold_seconds: float = 600.0
    dry_run: bool = False


@dataclass(frozen=True)
class ResourceBound:
    max_amount: int
    max_price_per_unit: int


@dataclass(frozen=True)
class SignerConfig:
    """Operator account key; the account address is ``liquidation.liquidator_address``."""

    private_key: str = field(default="", repr=False)
    chain_id: str = "SN_MAIN"
    l1_gas: ResourceBound = ResourceBound(0, 50_000_000_000_000)
    l2_gas: ResourceBound = ResourceBound(20_000_000, 20_000_000_000)
    l1_data_gas: ResourceBound = ResourceBound(2_000, 100_000_000_000)


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 30.0


@dataclass(frozen=True)
class StoreConfig:
    checkpoint_path: str = ""
    checkpoint_every_blocks: int = 100


@dataclass(frozen=True)
class EventsConfig:
    jsonl_path: str = ""


@dataclass(frozen=True)
class AppConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    thresholds: ThresholdsConfig = field(default_factory=ThresholdsConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    assets: dict[str, AssetInfo] = field(default_factory=dict)
    pools: dict[str, PoolConfig] = field(default_factory=dict)
    liquidation: LiquidationConfig = field(default_factory=LiquidationConfig)
    signer: SignerConfig = field(default_factory=SignerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    events: EventsConfig = field(default_factory=EventsConfig)

    def pair_for(self, pool_id: str, collateral: str, debt: str) -> PairConfig | None:
        pool = self.pools.get(pool_id)
        return pool.pair(collateral, debt) if pool else None


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


def _dec(value: Any, default: Decimal) -> Decimal:
    if value is None or value == "":
        return default
    return Decimal(str(value))


def _bool(value: Any, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


# ---------------------------------------------------------------------------
# YAML -> dataclass builders
# ---------------------------------------------------------------------------


def _build_engine(raw: dict[str, Any]) -> EngineConfig:
    d = EngineConfig()
    return EngineConfig(
        tick_interval_seconds=float(raw.get("tick_interval_seconds", d.tick_interval_seconds)),
        price_poll_seconds=float(raw.get("price_poll_seconds", d.price_poll_seconds)),
        price_move_trigger_pct=_dec(raw.get("price_move_trigger_pct"), d.price_move_trigger_pct),
        trigger_on_new_block=_bool(raw.get("trigger_on_new_block"), d.trigger_on_new_block),
        max_concurrency=int(raw.get("max_concurrency", d.max_concurrency)),
        plan_max_age_seconds=float(raw.get("plan_max_age_seconds", d.plan_max_age_seconds)),
        asset_config_ttl_seconds=float(
            raw.get("asset_config_ttl_seconds", d.asset_config_ttl_seconds)
        ),
        call_timeout_seconds=float(raw.get("call_timeout_seconds", d.call_timeout_seconds)),
    )


def _build_thresholds(raw: dict[str, Any]) -> ThresholdsConfig:
    d = ThresholdsConfig()
    return ThresholdsConfig(
        healthy=_dec(raw.get("healthy"), d.healthy),
        critical=_dec(raw.get("critical"), d.critical),
        liquidatable=_dec(raw.get("liquidatable"), d.liquidatable),
    )


def _build_chain(raw: dict[str, Any]) -> ChainConfig:
    d = ChainConfig()
    return ChainConfig(
        rpc_endpoints=tuple(raw.get("rpc_endpoints", [])),
        rpc_timeout=int(raw.get("rpc_timeout", d.rpc_timeout)),
        poll_interval_seconds=float(raw.get("poll_interval_seconds", d.poll_interval_seconds)),
        event_chunk_size=int(raw.get("event_chunk_size", d.event_chunk_size)),
        start_block=int(raw.get("start_block", d.start_block)),
    )


def _build_oracle(raw: dict[str, Any]) -> OracleConfig:
    pragma_raw = raw.get("pragma", {})
    pyth_raw = raw.get("pyth", {})
    return OracleConfig(
        staleness_tolerance_seconds=int(raw.get("staleness_tolerance_seconds", 300)),
        cache_ttl_seconds=float(raw.get("cache_ttl_seconds", 12.0)),
        pragma=PragmaConfig(
            address=pragma_raw.get("address", ""),
            pair_ids=dict(pragma_raw.get("pair_ids", {})),
            min_sources=int(pragma_raw.get("min_sources", 3)),
        ),
        pyth=PythConfig(
            enabled=_bool(pyth_raw.get("enabled"), False),
            hermes_url=pyth_raw.get("hermes_url", PythConfig.hermes_url),
            feeds=dict(pyth_raw.get("feeds", {})),
            min_sources=int(pyth_raw.get("min_sources", 1)),
        ),
    )


def _build_assets(raw: dict[str, Any]) -> dict[str, AssetInfo]:
    assets: dict[str, AssetInfo] = {}
    for symbol, cfg in raw.items():
        assets[symbol] = AssetInfo(
            address=cfg.get("address", ""),
            decimals=int(cfg.get("decimals", 18)),
        )
    return assets


def _build_pools(raw: dict[str, Any]) -> dict[str, PoolConfig]:
    pools: dict[str, PoolConfig] = {}
    for name, cfg in raw.items():
        pairs: list[PairConfig] = []
        for p in cfg.get("pairs", []):
            pairs.append(
                PairConfig(
                    collateral=p.get("collateral", ""),
                    debt=p.get("debt", ""),
                    collateral_factor=_dec(p.get("collateral_factor"), Decimal("0.8")),
                    liquidation_bonus=_dec(p.get("liquidation_bonus"), Decimal("0.05")),
                    partial_liquidation=_bool(p.get("partial_liquidation"), True),
                )
            )
        pools[name] = PoolConfig(address=cfg.get("address", ""), pairs=tuple(pairs))
    return pools


def _build_liquidation(raw: dict[str, Any]) -> LiquidationConfig:
    d = LiquidationConfig()
    return LiquidationConfig(
        liquidator_address=raw.get("liquidator_address", ""),
        liquidator_contract=raw.get("liquidator_contract", ""),
        swap_router=raw.get("swap_router", ""),
        slippage_tolerance=_dec(raw.get("slippage_tolerance"), d.slippage_tolerance),
        min_profit_usd=_dec(raw.get("min_profit_usd"), d.min_profit_usd),
        flash_loan_fee_rate=_dec(raw.get("flash_loan_fee_rate"), d.flash_loan_fee_rate),
        gas_cost_usd=_dec(raw.get("gas_cost_usd"), d.gas_cost_usd),
        dust_threshold_usd=_dec(raw.get("dust_threshold_usd"), d.dust_threshold_usd),
        target_health_factor=_dec(raw.get("target_health_factor"), d.target_health_factor),
        fee_token=raw.get("fee_token", d.fee_token),
        confirmation_timeout_seconds=float(
            raw.get("confirmation_timeout_seconds", d.confirmation_timeout_seconds)
        ),
        unresolved_hold_seconds=float(raw.get("unresolved_hold_seconds", d.unresolved_hold_seconds)),
        dry_run=_bool(raw.get("dry_run"), d.dry_run),
    )


def _build_bound(raw: Any, default: ResourceBound) -> ResourceBound:
    if not raw:
        return default
    return ResourceBound(
        max_amount=int(raw.get("max_amount", default.max_amount)),
        max_price_per_unit=int(raw.get("max_price_per_unit", default.max_price_per_unit)),
    )


def _build_signer(raw: dict[str, Any]) -> SignerConfig:
    d = SignerConfig()
    bounds = raw.get("resource_bounds", {})
    return SignerConfig(
        private_key=raw.get("private_key", ""),
        chain_id=raw.get("chain_id", d.chain_id) or d.chain_id,
        l1_gas=_build_bound(bounds.get("l1_gas"), d.l1_gas),
        l2_gas=_build_bound(bounds.get("l2_gas"), d.l2_gas),
        l1_data_gas=_build_bound(bounds.get("l1_data_gas"), d.l1_data_gas),
    )


def _build_retry(raw: dict[str, Any]) -> RetryConfig:
    return RetryConfig(
        max_attempts=int(raw.get("max_attempts", 3)),
        base_delay_seconds=float(raw.get("base_delay_seconds", 1.0)),
        multiplier=float(raw.get("multiplier", 2.0)),
        max_delay_seconds=float(raw.get("max_delay_seconds", 30.0)),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (one level up from this package).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    store_raw = raw.get("store", {})
    cfg = AppConfig(
        engine=_build_engine(raw.get("engine", {})),
        thresholds=_build_thresholds(raw.get("thresholds", {})),
        chain=_build_chain(raw.get("chain", {})),
        oracle=_build_oracle(raw.get("oracle", {})),
        assets=_build_assets(raw.get("assets", {})),
        pools=_build_pools(raw.get("pools", {})),
        liquidation=_build_liquidation(raw.get("liquidation", {})),
        signer=_build_signer(raw.get("signer", {})),
        retry=_build_retry(raw.get("retry", {})),
        store=StoreConfig(
            checkpoint_path=store_raw.get("checkpoint_path", ""),
            checkpoint_every_blocks=int(store_raw.get("checkpoint_every_blocks", 100)),
        ),
        events=EventsConfig(jsonl_path=raw.get("events", {}).get("jsonl_path", "")),
    )

    _validate(cfg)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    if not cfg.pools:
        raise ValueError("At least one pool must be configured")
    if not cfg.chain.rpc_endpoints:
        raise ValueError("At least one RPC endpoint must be configured")

    for name, pool in cfg.pools.items():
        if not pool.address:
            raise ValueError(f"Pool '{name}' has no address")
        for pair in pool.pairs:
            for symbol in (pair.collateral, pair.debt):
                if symbol not in cfg.assets:
                    raise ValueError(f"Pool '{name}' references unknown asset '{symbol}'")
            if not 0 < pair.collateral_factor <= 1:
                raise ValueError(
                    f"Pool '{name}' pair {pair.collateral}/{pair.debt}: "
                    "collateral_factor must be in (0, 1]"
                )
            if pair.liquidation_bonus < 0:
                raise ValueError(
                    f"Pool '{name}' pair {pair.collateral}/{pair.debt}: "
                    "liquidation_bonus must be non-negative"
                )

    t = cfg.thresholds
    if not t.liquidatable <= t.critical <= t.healthy:
        raise ValueError("Thresholds must satisfy liquidatable <= critical <= healthy")

    liq = cfg.liquidation
    if not 0 <= liq.slippage_tolerance < 1:
        raise ValueError("slippage_tolerance must be in [0, 1)")
    if liq.target_health_factor <= t.liquidatable:
        raise ValueError("target_health_factor must be above the liquidation threshold")
    if cfg.engine.max_concurrency < 1:
        raise ValueError("max_concurrency must be at least 1")
    if cfg.retry.max_attempts < 1:
        raise ValueError("retry.max_attempts must be at least 1")
    if cfg.signer.private_key and not liq.liquidator_address:
        raise ValueError("signer.private_key requires liquidation.liquidator_address")
