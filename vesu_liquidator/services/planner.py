"""Liquidation planning: full or partial, and only when it pays."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal

from ..config import AppConfig, PairConfig
from ..errors import EngineError, InsufficientLiquidity, NoPlan, Unprofitable, ValidationError
from ..models import (
    ZERO,
    Classification,
    HealthReport,
    LiquidationKind,
    LiquidationPlan,
    Position,
)
from ..units import token_quantum

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanDecision:
    """Planner outcome: a plan, or the reason there is none."""

    plan: LiquidationPlan | None
    reason: str = ""
    error: EngineError | None = None


class LiquidationPlanner:
    def __init__(self, config: AppConfig, clock: Callable[[], float] = time.time) -> None:
        self._config = config
        self._liq = config.liquidation
        self._clock = clock

    def plan(self, position: Position, report: HealthReport) -> LiquidationPlan | None:
        return self.assess(position, report).plan

    def assess(self, position: Position, report: HealthReport) -> PlanDecision:
        """Build a plan for a LIQUIDATABLE report.

        Numeric and business-rule failures stop here and come back as a
        ``PlanDecision`` without a plan; nothing past this point acts on them.
        """
        if report.classification is not Classification.LIQUIDATABLE:
            return PlanDecision(None, f"position is {report.classification.value}")
        try:
            plan = self._build(position, report)
        except (NoPlan, ValidationError) as e:
            logger.info("No plan for %s: %s", position.ref, e)
            return PlanDecision(None, str(e), e)
        except ArithmeticError as e:
            error = ValidationError(f"Arithmetic error while planning: {e}")
            logger.warning("No plan for %s: %s", position.ref, error)
            return PlanDecision(None, str(error), error)

        logger.info(
            "Planned %s liquidation of %s: repay %s %s, min collateral %s %s, profit $%s",
            plan.kind.value, position.ref, plan.debt_to_repay, position.ref.debt_asset,
            plan.min_collateral_to_receive, position.ref.collateral_asset,
            plan.expected_profit_value.quantize(Decimal("0.01")),
        )
        return PlanDecision(plan)

    # ------------------------------------------------------------------

    def _pair(self, position: Position) -> PairConfig:
        ref = position.ref
        pair = self._config.pair_for(ref.pool_id, ref.collateral_asset, ref.debt_asset)
        if pair is None:
            raise ValidationError(f"No pair config for {ref.collateral_asset}/{ref.debt_asset}")
        return pair

    def _quantum(self, asset: str) -> Decimal:
        info = self._config.assets.get(asset)
        return token_quantum(info.decimals if info else 18)

    def partial_repay(self, report: HealthReport, pair: PairConfig) -> Decimal | None:
        """Debt (Assets) whose repayment restores the target health factor.

        Repaying value ``V`` removes ``V`` of liabilities and ``V * (1 + bonus)``
        of collateral value, i.e. ``V * liquidation_factor`` of risk-adjusted
        collateral where ``liquidation_factor = (1 + bonus) * collateral_factor``.
        Returns None when a full liquidation applies instead.
        """
        target = self._liq.target_health_factor
        liquidation_factor = (1 + pair.liquidation_bonus) * pair.collateral_factor
        if target <= liquidation_factor:
            # Liquidating only makes health worse; close the position.
            return None

        debt_price = report.debt_price
        value = (target * report.debt_value - report.risk_adjusted_collateral) / (
            target - liquidation_factor
        )
        repay = (value / debt_price).quantize(
            self._quantum(report.ref.debt_asset), rounding=ROUND_CEILING
        )
        repay = min(max(repay, ZERO), report.debt_assets)
        if repay <= 0 or repay >= report.debt_assets:
            return None

        residual_value = (report.debt_assets - repay) * debt_price
        if residual_value < self._liq.dust_threshold_usd:
            return None

        seized = repay * debt_price * (1 + pair.liquidation_bonus) / report.collateral_price
        if seized > report.collateral_assets:
            return None
        return repay

    def _build(self, position: Position, report: HealthReport) -> LiquidationPlan:
        pair = self._pair(position)
        ref = position.ref
        collateral = report.collateral_assets
        debt = report.debt_assets
        collateral_price = report.collateral_price
        debt_price = report.debt_price

        if collateral_price is None or debt_price is None or collateral_price <= 0 or debt_price <= 0:
            raise ValidationError("Report carries no usable prices")
        if collateral <= 0:
            raise InsufficientLiquidity(f"{ref} has no collateral to seize")
        if debt <= 0:
            raise NoPlan(f"{ref} has no debt")

        kind = LiquidationKind.FULL
        debt_to_repay = debt
        if pair.partial_liquidation:
            partial = self.partial_repay(report, pair)
            if partial is not None:
                kind = LiquidationKind.PARTIAL
                debt_to_repay = partial

        collateral_quantum = self._quantum(ref.collateral_asset)
        bonus = pair.liquidation_bonus
        seized = debt_to_repay * debt_price * (1 + bonus) / collateral_price
        expected_collateral = min(collateral, seized).quantize(collateral_quantum, rounding=ROUND_FLOOR)
        if expected_collateral <= 0:
            raise InsufficientLiquidity(f"{ref} would yield no collateral")

        min_collateral = (expected_collateral * (1 - self._liq.slippage_tolerance)).quantize(
            collateral_quantum, rounding=ROUND_FLOOR
        )

        # Profit in debt-asset units, assuming the swap clears at the floor.
        received = min_collateral * collateral_price / debt_price
        flash_fee = debt_to_repay * self._liq.flash_loan_fee_rate
        gas = self._liq.gas_cost_usd / debt_price
        profit = received - debt_to_repay - flash_fee - gas
        profit_value = profit * debt_price

        if profit_value <= self._liq.min_profit_usd:
            raise Unprofitable(
                f"Expected profit ${profit_value.quantize(Decimal('0.01'))} does not exceed "
                f"minimum ${self._liq.min_profit_usd}",
                profit=profit_value,
            )

        return LiquidationPlan(
            position_ref=ref,
            debt_to_repay=debt_to_repay,
            min_collateral_to_receive=min_collateral,
            kind=kind,
            expected_profit=profit,
            expected_profit_value=profit_value,
            expected_collateral=expected_collateral,
            health_factor=report.health_factor,
            collateral_price=collateral_price,
            debt_price=debt_price,
            price_timestamp=report.price_timestamp,
            position_block=position.last_block,
            created_at=self._clock(),
        )


def stale_reason(plan: LiquidationPlan, now: float, config: AppConfig) -> str | None:
    """Why ``plan`` must not be executed as it stands at ``now``; None while it is fresh.

    A plan goes stale when it outlives ``plan_max_age_seconds`` or when the
    prices it was sized on fall outside the oracle staleness tolerance.
    """
    age = now - plan.created_at
    if age > config.engine.plan_max_age_seconds:
        return f"plan is stale ({age:.1f}s old)"
    price_age = now - plan.price_timestamp
    if price_age > config.oracle.staleness_tolerance_seconds:
        return f"plan prices are stale ({price_age:.0f}s old)"
    return None
