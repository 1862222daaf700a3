"""Health factor computation and classification."""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from decimal import Decimal

from ..config import AppConfig, ThresholdsConfig
from ..errors import EngineError, ValidationError
from ..models import (
    INFINITY,
    AmountKind,
    AssetConfig,
    Classification,
    HealthReport,
    Position,
    PricePoint,
)
from ..store.position_store import StoreSnapshot
from ..units import collateral_rate, debt_rate, to_assets, token_quantum

logger = logging.getLogger(__name__)

PriceMap = Mapping[str, PricePoint | EngineError]


class HealthEvaluator:
    """Turns a position, its asset configs and prices into a ``HealthReport``.

    Never guesses: a missing, stale or failed price, or a missing asset
    config, yields ``UNKNOWN`` with the reason attached.
    """

    def __init__(self, config: AppConfig, is_stale: Callable[[PricePoint], bool]) -> None:
        self._config = config
        self._thresholds: ThresholdsConfig = config.thresholds
        self._is_stale = is_stale

    def classify(self, health_factor: Decimal) -> Classification:
        t = self._thresholds
        if health_factor >= t.healthy:
            return Classification.HEALTHY
        if health_factor >= t.critical:
            return Classification.AT_RISK
        if health_factor >= t.liquidatable:
            return Classification.CRITICAL
        return Classification.LIQUIDATABLE

    def _price(self, asset: str, prices: PriceMap) -> tuple[PricePoint | None, str]:
        entry = prices.get(asset)
        if entry is None:
            return None, f"no price for {asset}"
        if isinstance(entry, EngineError):
            return None, f"price unavailable for {asset}: {entry}"
        if self._is_stale(entry):
            return None, f"stale price for {asset} (last updated {entry.last_updated})"
        return entry, ""

    def evaluate(
        self,
        position: Position,
        collateral_cfg: AssetConfig | None,
        debt_cfg: AssetConfig | None,
        prices: PriceMap,
    ) -> HealthReport:
        ref = position.ref

        if not position.has_debt:
            return HealthReport(ref=ref, classification=Classification.HEALTHY, health_factor=INFINITY)

        pair = self._config.pair_for(ref.pool_id, ref.collateral_asset, ref.debt_asset)
        if pair is None:
            return self._unknown(position, f"no pair config for {ref.collateral_asset}/{ref.debt_asset}")
        if collateral_cfg is None or debt_cfg is None:
            return self._unknown(position, "asset config not loaded")

        collateral_point, reason = self._price(ref.collateral_asset, prices)
        if collateral_point is None:
            return self._unknown(position, reason)
        debt_point, reason = self._price(ref.debt_asset, prices)
        if debt_point is None:
            return self._unknown(position, reason)

        try:
            collateral_assets = to_assets(
                position.collateral_shares,
                collateral_rate(collateral_cfg),
                AmountKind.COLLATERAL,
                token_quantum(collateral_cfg.decimals),
            )
            debt_assets = to_assets(
                position.nominal_debt,
                debt_rate(debt_cfg),
                AmountKind.DEBT,
                token_quantum(debt_cfg.decimals),
            )
        except ValidationError as e:
            return self._unknown(position, f"conversion failed: {e}")

        collateral_value = collateral_assets * collateral_point.price
        risk_adjusted = collateral_value * pair.collateral_factor
        liabilities = debt_assets * debt_point.price

        if liabilities > 0:
            health_factor = risk_adjusted / liabilities
            classification = self.classify(health_factor)
        else:
            health_factor = INFINITY
            classification = Classification.HEALTHY

        return HealthReport(
            ref=ref,
            classification=classification,
            health_factor=health_factor,
            collateral_assets=collateral_assets,
            debt_assets=debt_assets,
            collateral_price=collateral_point.price,
            debt_price=debt_point.price,
            collateral_value=collateral_value,
            debt_value=liabilities,
            risk_adjusted_collateral=risk_adjusted,
            price_timestamp=min(collateral_point.last_updated, debt_point.last_updated),
        )

    def evaluate_snapshot(self, snapshot: StoreSnapshot, prices: PriceMap) -> list[HealthReport]:
        reports: list[HealthReport] = []
        for ref, position in snapshot.positions.items():
            report = self.evaluate(
                position,
                snapshot.asset_config(ref.pool_id, ref.collateral_asset),
                snapshot.asset_config(ref.pool_id, ref.debt_asset),
                prices,
            )
            if report.classification is Classification.UNKNOWN:
                logger.warning("Skipping %s this tick: %s", ref, report.reason)
            reports.append(report)
        return reports

    @staticmethod
    def _unknown(position: Position, reason: str) -> HealthReport:
        return HealthReport(ref=position.ref, classification=Classification.UNKNOWN, reason=reason)
