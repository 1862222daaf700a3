"""Monitor loop: snapshot -> prices -> health -> plans -> execution, per tick."""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from decimal import Decimal

from ..config import AppConfig
from ..errors import EngineError, ExecutionError, FatalError
from ..events import EventEmitter, EventType
from ..interfaces.pool import PoolReader
from ..models import Classification, EventKind, HealthReport, LiquidationPlan, PositionRef, PricePoint
from ..oracles.client import OracleClient
from ..retry import RetryPolicy, retry_async
from ..store.position_store import PositionStore, StoreSnapshot
from .executor import LiquidationExecutor
from .health import HealthEvaluator, PriceMap
from .planner import LiquidationPlanner, stale_reason

logger = logging.getLogger(__name__)


@dataclass
class MonitorStats:
    ticks: int = 0
    positions_evaluated: int = 0
    unknown: int = 0
    plans_created: int = 0
    plans_rejected: int = 0
    plans_discarded: int = 0
    executions_confirmed: int = 0
    executions_failed: int = 0
    last_tick_at: float = 0.0


@dataclass(frozen=True)
class TickSummary:
    tick: int
    trigger: str
    started_at: float
    duration: float
    evaluated: int
    classifications: dict[str, int] = field(default_factory=dict)
    plans: int = 0
    confirmed: int = 0
    failed: int = 0


class MonitorLoop:
    """Drives the evaluation pipeline on an interval, a price move or a new block."""

    def __init__(
        self,
        store: PositionStore,
        pool: PoolReader,
        oracle: OracleClient,
        evaluator: HealthEvaluator,
        planner: LiquidationPlanner,
        executor: LiquidationExecutor,
        emitter: EventEmitter,
        config: AppConfig,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._pool = pool
        self._oracle = oracle
        self._evaluator = evaluator
        self._planner = planner
        self._executor = executor
        self._emitter = emitter
        self._config = config
        self._engine = config.engine
        self._retry = retry_policy or RetryPolicy.from_config(config.retry)
        self._clock = clock

        self.stats = MonitorStats()
        self._classifications: dict[PositionRef, Classification] = {}
        self._evaluated_prices: dict[str, Decimal] = {}
        self._tracked_assets: set[str] = set()
        self._wake = asyncio.Event()
        self._trigger = "interval"

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def trigger(self, reason: str) -> None:
        """Run the next tick immediately."""
        self._trigger = reason
        self._wake.set()

    def notify_new_block(self, block_number: int) -> None:
        if self._engine.trigger_on_new_block:
            logger.debug("New block %d", block_number)
            self.trigger("new_block")

    def price_moved(self, prices: PriceMap) -> str | None:
        """Asset whose price moved more than the trigger percentage since the last evaluation."""
        threshold = self._engine.price_move_trigger_pct
        for asset, point in prices.items():
            if not isinstance(point, PricePoint):
                continue
            previous = self._evaluated_prices.get(asset)
            if previous is None or previous == 0:
                continue
            change = abs(point.price - previous) / previous * 100
            if change > threshold:
                logger.info("Price of %s moved %.2f%% since last evaluation", asset, change)
                return asset
        return None

    async def watch_prices(self) -> None:
        """Poll tracked assets and trigger a tick on a large move."""
        while True:
            await asyncio.sleep(self._engine.price_poll_seconds)
            if not self._tracked_assets:
                continue
            try:
                prices = await self._oracle.get_prices(self._tracked_assets)
            except Exception as e:
                logger.warning("Price watch failed: %s", e)
                continue
            asset = self.price_moved(prices)
            if asset is not None:
                self.trigger(f"price_move:{asset}")

    # ------------------------------------------------------------------
    # Tick stages
    # ------------------------------------------------------------------

    async def refresh_asset_configs(self, snapshot: StoreSnapshot) -> StoreSnapshot:
        """Re-read asset configs older than the TTL; returns a fresh snapshot."""
        ttl = self._engine.asset_config_ttl_seconds
        now = self._clock()
        stale = sorted(
            (pool_id, asset)
            for pool_id, asset in snapshot.referenced_pool_assets()
            if (age := self._store.asset_config_age(pool_id, asset, now)) is None or age > ttl
        )
        if not stale:
            return snapshot

        results = await asyncio.gather(
            *(self._pool.asset_config(pool_id, asset) for pool_id, asset in stale),
            return_exceptions=True,
        )
        for (pool_id, asset), result in zip(stale, results):
            if isinstance(result, FatalError):
                raise result
            if isinstance(result, Exception):
                logger.warning("Asset config refresh failed for %s/%s: %s", pool_id, asset, result)
                continue
            if isinstance(result, BaseException):
                raise result
            self._store.update_asset_config(pool_id, asset, result, fetched_at=now)
        return self._store.snapshot()

    async def fetch_prices(self, assets: Iterable[str]) -> PriceMap:
        """Batch fetch, then retry each failed asset with backoff."""
        prices = dict(await self._oracle.get_prices(assets))
        for asset, entry in list(prices.items()):
            if not isinstance(entry, EngineError):
                continue
            try:
                prices[asset] = await retry_async(
                    lambda a=asset: self._oracle.get_price(a),
                    self._retry,
                    f"price {asset}",
                )
            except EngineError as e:
                prices[asset] = e
        return prices

    def _emit_transitions(self, snapshot: StoreSnapshot, reports: list[HealthReport]) -> None:
        for report in reports:
            previous = self._classifications.get(report.ref)
            if previous is not report.classification:
                self._emitter.emit(
                    EventType.HEALTH_TRANSITION,
                    position=str(report.ref),
                    previous=previous.value if previous else None,
                    current=report.classification,
                    health_factor=report.health_factor,
                )
            self._classifications[report.ref] = report.classification
            if report.classification is Classification.UNKNOWN:
                self._emitter.emit(EventType.POSITION_SKIPPED, position=str(report.ref), reason=report.reason)
            elif report.classification is not Classification.HEALTHY:
                self._emitter.emit(EventType.HEALTH_REPORT, report=report)

        for ref in [r for r in self._classifications if r not in snapshot.positions]:
            previous = self._classifications.pop(ref)
            journal = self._store.journal(ref)
            closed_by = "liquidated" if journal and journal[-1].kind is EventKind.LIQUIDATED else "closed"
            self._emitter.emit(
                EventType.HEALTH_TRANSITION,
                position=str(ref),
                previous=previous,
                current=closed_by,
            )

    def _plan_all(self, snapshot: StoreSnapshot, reports: list[HealthReport]) -> list[LiquidationPlan]:
        plans: list[LiquidationPlan] = []
        for report in reports:
            if report.classification is not Classification.LIQUIDATABLE:
                continue
            if self._executor.in_flight(report.ref):
                logger.info("Skipping %s: liquidation already in flight", report.ref)
                continue
            decision = self._planner.assess(snapshot.positions[report.ref], report)
            if decision.plan is None:
                self.stats.plans_rejected += 1
                self._emitter.emit(EventType.PLAN_REJECTED, position=str(report.ref), reason=decision.reason)
                continue
            self.stats.plans_created += 1
            self._emitter.emit(EventType.PLAN_CREATED, plan=decision.plan)
            plans.append(decision.plan)

        plans.sort(key=lambda p: p.expected_profit_value, reverse=True)
        return plans

    def _discard(self, plan: LiquidationPlan, reason: str) -> None:
        self.stats.plans_discarded += 1
        logger.info("Discarding plan %s for %s: %s", plan.plan_id, plan.position_ref, reason)
        self._emitter.emit(
            EventType.PLAN_DISCARDED, plan_id=plan.plan_id, position=str(plan.position_ref), reason=reason
        )

    async def revalidate(self, plan: LiquidationPlan) -> LiquidationPlan | None:
        """Re-plan from fresh prices if the plan or the prices it was sized on went stale."""
        stale = stale_reason(plan, self._clock(), self._config)
        if stale is None:
            return plan

        ref = plan.position_ref
        position = self._store.get(ref)
        if position is None:
            self._discard(plan, "position closed")
            return None

        snapshot = self._store.snapshot()
        prices = await self._oracle.get_prices({ref.collateral_asset, ref.debt_asset})
        report = self._evaluator.evaluate(
            position,
            snapshot.asset_config(ref.pool_id, ref.collateral_asset),
            snapshot.asset_config(ref.pool_id, ref.debt_asset),
            prices,
        )
        decision = self._planner.assess(position, report)
        if decision.plan is None:
            self._discard(plan, f"stale plan no longer valid: {decision.reason}")
            return None
        logger.info("Re-planned %s: %s", ref, stale)
        return decision.plan

    async def _execute_one(self, plan: LiquidationPlan, semaphore: asyncio.Semaphore) -> bool:
        async with semaphore:
            try:
                current = await self.revalidate(plan)
                if current is None:
                    return False
                await self._executor.execute(current)
            except FatalError:
                raise
            except ExecutionError as e:
                self.stats.executions_failed += 1
                logger.warning("Liquidation of %s not completed: %s", plan.position_ref, e)
                return False
            except Exception as e:
                self.stats.executions_failed += 1
                logger.error("Unexpected error executing plan for %s: %s", plan.position_ref, e)
                return False
            self.stats.executions_confirmed += 1
            return True

    async def execute_plans(self, plans: list[LiquidationPlan]) -> list[bool]:
        """Execute in rank order with bounded concurrency; one plan's failure never stops the rest."""
        semaphore = asyncio.Semaphore(self._engine.max_concurrency)
        return list(await asyncio.gather(*(self._execute_one(p, semaphore) for p in plans)))

    # ------------------------------------------------------------------
    # Tick / loop
    # ------------------------------------------------------------------

    async def tick(self, trigger: str = "interval") -> TickSummary:
        started = self._clock()
        snapshot = await self.refresh_asset_configs(self._store.snapshot())
        await self._executor.resolve_unknown(snapshot.positions)
        assets = snapshot.referenced_assets()
        self._tracked_assets = assets

        prices = await self.fetch_prices(assets) if assets else {}
        for asset, entry in prices.items():
            if isinstance(entry, PricePoint):
                self._evaluated_prices[asset] = entry.price

        reports = self._evaluator.evaluate_snapshot(snapshot, prices)
        self._emit_transitions(snapshot, reports)
        plans = self._plan_all(snapshot, reports)
        results = await self.execute_plans(plans)

        counts: dict[str, int] = {}
        for report in reports:
            counts[report.classification.value] = counts.get(report.classification.value, 0) + 1

        self.stats.ticks += 1
        self.stats.positions_evaluated += len(reports)
        self.stats.unknown += counts.get(Classification.UNKNOWN.value, 0)
        self.stats.last_tick_at = started

        summary = TickSummary(
            tick=self.stats.ticks,
            trigger=trigger,
            started_at=started,
            duration=self._clock() - started,
            evaluated=len(reports),
            classifications=counts,
            plans=len(plans),
            confirmed=sum(1 for r in results if r),
            failed=sum(1 for r in results if not r),
        )
        self._emitter.emit(EventType.TICK_COMPLETED, summary=summary)
        logger.info(
            "Tick %d (%s): %d positions, %s, %d plans, %d confirmed",
            summary.tick, trigger, summary.evaluated, counts, summary.plans, summary.confirmed,
        )
        return summary

    async def run(self) -> None:
        """Tick until a ``FatalError``; any other tick failure is logged and the loop continues."""
        await self._store.wait_ready()
        logger.info(
            "Starting monitor loop (every %.0fs, price trigger %s%%)",
            self._engine.tick_interval_seconds, self._engine.price_move_trigger_pct,
        )

        trigger = "startup"
        while True:
            try:
                await self.tick(trigger)
            except FatalError as e:
                logger.critical("Halting monitor loop: %s", e)
                self._emitter.emit(EventType.ENGINE_HALTED, reason=str(e))
                raise
            except Exception as e:
                logger.error("Error in monitor loop: %s", e)

            try:
                await asyncio.wait_for(self._wake.wait(), self._engine.tick_interval_seconds)
                trigger = self._trigger
            except asyncio.TimeoutError:
                trigger = "interval"
            self._wake.clear()
            self._trigger = "interval"
