"""Liquidation execution: an explicit, awaited state machine per plan.

PLANNED -> SUBMITTED -> CONFIRMED | REVERTED | SUPERSEDED
PLANNED -> ABORTED            (nothing sent on-chain)
SUBMITTED -> UNKNOWN          (outcome not observed; never assumed successful)
UNKNOWN -> CONFIRMED | REVERTED | SUPERSEDED   (a later receipt resolves it)

A position stays locked while one of its plans is UNKNOWN, until a receipt
resolves the outcome or the position changes on chain after the plan was made.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal

from ..config import AppConfig
from ..errors import (
    Aborted,
    AlreadyLiquidated,
    EngineError,
    ExecutionError,
    ExecutionFailed,
    ExecutionTimeout,
    ValidationError,
)
from ..events import EventEmitter, EventType
from ..interfaces.liquidation import LiquidationGateway
from ..models import (
    ExecutionReceipt,
    ExecutionState,
    LiquidationPlan,
    LiquidationRecord,
    Position,
    PositionRef,
)
from ..oracles.client import OracleClient
from .planner import stale_reason

logger = logging.getLogger(__name__)

# Revert reasons meaning somebody else got there first.
_RACE_LOST_PATTERNS = (
    "not-undercollateralized",
    "not undercollateralized",
    "not liquidatable",
    "not-liquidatable",
    "healthy",
    "no-debt",
    "zero debt",
)


def is_race_lost(reason: str) -> bool:
    reason = reason.lower()
    return any(pattern in reason for pattern in _RACE_LOST_PATTERNS)


@dataclass
class PlanExecution:
    """Mutable progress of one plan through the state machine."""

    plan: LiquidationPlan
    state: ExecutionState = ExecutionState.PLANNED
    history: list[tuple[ExecutionState, float]] = field(default_factory=list)
    transaction_ref: str = ""
    reason: str = ""
    record: LiquidationRecord | None = None


class LiquidationExecutor:
    """Runs plans through the gateway and keeps the audit log of confirmed liquidations."""

    def __init__(
        self,
        gateway: LiquidationGateway | None,
        oracle: OracleClient,
        config: AppConfig,
        emitter: EventEmitter,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._gateway = gateway
        self._oracle = oracle
        self._config = config
        self._liq = config.liquidation
        self._emitter = emitter
        self._clock = clock
        self._in_flight: set[PositionRef] = set()
        self._unresolved: dict[PositionRef, PlanExecution] = {}
        self._executions: dict[str, PlanExecution] = {}
        self._records: list[LiquidationRecord] = []

    @property
    def dry_run(self) -> bool:
        return self._gateway is None or self._liq.dry_run

    @property
    def records(self) -> tuple[LiquidationRecord, ...]:
        return tuple(self._records)

    def execution(self, plan_id: str) -> PlanExecution | None:
        return self._executions.get(plan_id)

    def in_flight(self, ref: PositionRef) -> bool:
        return ref in self._in_flight or ref in self._unresolved

    def unresolved(self) -> tuple[PlanExecution, ...]:
        return tuple(self._unresolved.values())

    def _require_gateway(self) -> LiquidationGateway:
        if self._gateway is None:
            raise ExecutionError("No liquidation gateway configured")
        return self._gateway

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _transition(self, execution: PlanExecution, state: ExecutionState, reason: str = "") -> None:
        if execution.state.is_terminal:
            raise ExecutionError(
                f"Plan {execution.plan.plan_id} already {execution.state.value}, cannot move to {state.value}"
            )
        execution.state = state
        execution.history.append((state, self._clock()))
        if reason:
            execution.reason = reason
        self._emitter.emit(
            EventType.EXECUTION_STATE,
            plan_id=execution.plan.plan_id,
            position=str(execution.plan.position_ref),
            state=state,
            transaction_ref=execution.transaction_ref,
            reason=reason,
        )

    def _fail(
        self,
        execution: PlanExecution,
        state: ExecutionState,
        error_cls: type[ExecutionError],
        reason: str,
    ) -> ExecutionError:
        self._transition(execution, state, reason)
        log = logger.info if state in (ExecutionState.ABORTED, ExecutionState.SUPERSEDED) else logger.error
        log("Plan %s for %s %s: %s", execution.plan.plan_id, execution.plan.position_ref, state.value, reason)
        return error_cls(
            reason,
            plan_id=execution.plan.plan_id,
            state=state.value,
            transaction_ref=execution.transaction_ref,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, plan: LiquidationPlan) -> LiquidationRecord:
        """Execute one plan; returns the audit record or raises an ``ExecutionError``."""
        execution = PlanExecution(plan=plan)
        execution.history.append((ExecutionState.PLANNED, self._clock()))
        self._executions[plan.plan_id] = execution
        ref = plan.position_ref

        if self.in_flight(ref):
            raise self._fail(execution, ExecutionState.ABORTED, Aborted, "another plan for this position is in flight")
        if self.dry_run:
            raise self._fail(execution, ExecutionState.ABORTED, Aborted, "dry run: transaction not submitted")
        stale = stale_reason(plan, self._clock(), self._config)
        if stale is not None:
            raise self._fail(execution, ExecutionState.ABORTED, Aborted, stale)

        self._in_flight.add(ref)
        try:
            await self._preflight(execution)
            await self._submit(execution)
            receipt = await self._confirm(execution)
            self._check_receipt(execution, receipt)
            return self._settle(execution, receipt)
        finally:
            self._in_flight.discard(ref)
            if execution.state is ExecutionState.UNKNOWN:
                logger.warning(
                    "Holding %s until the outcome of plan %s is known (tx %s)",
                    ref, plan.plan_id, execution.transaction_ref or "unknown",
                )
                self._unresolved[ref] = execution

    async def _preflight(self, execution: PlanExecution) -> None:
        """Estimate the network fee; abort if it cannot be priced or eats the profit."""
        gateway = self._require_gateway()
        plan = execution.plan
        timeout = self._config.engine.call_timeout_seconds
        try:
            fee = await asyncio.wait_for(gateway.estimate_fee(plan), timeout)
        except asyncio.TimeoutError:
            raise self._fail(execution, ExecutionState.ABORTED, Aborted, "fee estimation timed out") from None
        except Exception as e:
            if is_race_lost(str(e)):
                raise self._fail(
                    execution, ExecutionState.SUPERSEDED, AlreadyLiquidated, f"position no longer liquidatable: {e}"
                ) from e
            raise self._fail(execution, ExecutionState.ABORTED, Aborted, f"fee estimation failed: {e}") from e

        try:
            fee_price = await self._oracle.get_price(self._liq.fee_token)
        except EngineError as e:
            raise self._fail(
                execution, ExecutionState.ABORTED, Aborted, f"cannot price fee token {self._liq.fee_token}: {e}"
            ) from e

        fee_value: Decimal = fee * fee_price.price
        if fee_value >= plan.expected_profit_value:
            raise self._fail(
                execution,
                ExecutionState.ABORTED,
                Aborted,
                f"network fee ${fee_value:.2f} exceeds expected profit ${plan.expected_profit_value:.2f}",
            )
        logger.debug("Fee estimate for plan %s: %s %s ($%s)", plan.plan_id, fee, self._liq.fee_token, fee_value)

    async def _submit(self, execution: PlanExecution) -> None:
        gateway = self._require_gateway()
        timeout = self._config.engine.call_timeout_seconds
        try:
            tx_ref = await asyncio.wait_for(gateway.submit(execution.plan), timeout)
        except asyncio.TimeoutError:
            raise self._fail(
                execution, ExecutionState.UNKNOWN, ExecutionTimeout, "submission timed out; outcome unknown"
            ) from None
        except Exception as e:
            if is_race_lost(str(e)):
                raise self._fail(
                    execution, ExecutionState.SUPERSEDED, AlreadyLiquidated, f"position no longer liquidatable: {e}"
                ) from e
            if isinstance(e, ValidationError):
                raise self._fail(execution, ExecutionState.ABORTED, Aborted, f"submission rejected: {e}") from e
            # The transaction may have reached a node before the failure.
            raise self._fail(
                execution, ExecutionState.UNKNOWN, ExecutionTimeout, f"submission failed; outcome unknown: {e}"
            ) from e

        execution.transaction_ref = tx_ref
        self._transition(execution, ExecutionState.SUBMITTED)
        logger.info("Submitted liquidation of %s: tx %s", execution.plan.position_ref, tx_ref)

    async def _confirm(self, execution: PlanExecution) -> ExecutionReceipt:
        gateway = self._require_gateway()
        tx_ref = execution.transaction_ref
        try:
            receipt = await asyncio.wait_for(
                gateway.wait_for_receipt(tx_ref), self._liq.confirmation_timeout_seconds
            )
        except (asyncio.TimeoutError, ExecutionTimeout):
            raise self._fail(
                execution, ExecutionState.UNKNOWN, ExecutionTimeout, f"confirmation of {tx_ref} timed out"
            ) from None
        except Exception as e:
            raise self._fail(
                execution, ExecutionState.UNKNOWN, ExecutionTimeout, f"could not confirm {tx_ref}: {e}"
            ) from e
        return receipt

    def _check_receipt(self, execution: PlanExecution, receipt: ExecutionReceipt) -> None:
        """Raise the matching ``ExecutionError`` for a reverted receipt."""
        if not receipt.succeeded:
            if is_race_lost(receipt.revert_reason):
                raise self._fail(
                    execution,
                    ExecutionState.SUPERSEDED,
                    AlreadyLiquidated,
                    f"lost liquidation race: {receipt.revert_reason}",
                )
            raise self._fail(
                execution, ExecutionState.REVERTED, ExecutionFailed, f"transaction reverted: {receipt.revert_reason}"
            )

    def _settle(self, execution: PlanExecution, receipt: ExecutionReceipt) -> LiquidationRecord:
        plan = execution.plan
        ref = plan.position_ref
        pair = self._config.pair_for(ref.pool_id, ref.collateral_asset, ref.debt_asset)
        record = LiquidationRecord(
            liquidator_address=self._liq.liquidator_address,
            transaction_ref=receipt.transaction_ref,
            collateral_seized=receipt.collateral_seized or plan.expected_collateral,
            debt_repaid=receipt.debt_repaid or plan.debt_to_repay,
            liquidation_bonus=pair.liquidation_bonus if pair else Decimal(0),
            timestamp=self._clock(),
            position_ref=ref,
            plan_id=plan.plan_id,
        )
        execution.record = record
        self._records.append(record)
        self._transition(execution, ExecutionState.CONFIRMED)
        self._emitter.emit(EventType.LIQUIDATION_RECORDED, record=record)
        logger.info(
            "Liquidated %s: repaid %s %s, seized %s %s (tx %s)",
            ref, record.debt_repaid, ref.debt_asset, record.collateral_seized,
            ref.collateral_asset, record.transaction_ref,
        )
        return record

    # ------------------------------------------------------------------
    # Unresolved outcomes
    # ------------------------------------------------------------------

    async def resolve_unknown(self, positions: Mapping[PositionRef, Position]) -> None:
        """Follow up plans left UNKNOWN and release their positions once safe.

        A receipt settles the plan as usual. Without one, the position is
        released once it disappears or moves past the block it was planned at,
        or after ``unresolved_hold_seconds``.
        """
        now = self._clock()
        for ref, execution in list(self._unresolved.items()):
            receipt = await self._poll_receipt(execution)
            if receipt is not None:
                del self._unresolved[ref]
                try:
                    self._check_receipt(execution, receipt)
                    self._settle(execution, receipt)
                except ExecutionError as e:
                    logger.info("Plan %s for %s resolved without liquidation: %s", execution.plan.plan_id, ref, e)
                continue

            position = positions.get(ref)
            held = now - execution.history[-1][1]
            if position is None or position.last_block > execution.plan.position_block:
                reason = "position changed on chain"
            elif held > self._liq.unresolved_hold_seconds:
                reason = f"held {held:.0f}s without a receipt"
            else:
                continue
            del self._unresolved[ref]
            logger.warning(
                "Releasing %s: %s, outcome of plan %s still unknown", ref, reason, execution.plan.plan_id
            )

    async def _poll_receipt(self, execution: PlanExecution) -> ExecutionReceipt | None:
        if not execution.transaction_ref or self._gateway is None:
            return None
        try:
            return await asyncio.wait_for(
                self._gateway.wait_for_receipt(execution.transaction_ref),
                self._config.engine.call_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return None
        except Exception as e:
            logger.warning("Receipt follow-up for %s failed: %s", execution.transaction_ref, e)
            return None
