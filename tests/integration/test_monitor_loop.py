"""Integration tests for the monitor loop: full tick with mocked I/O."""
from __future__ import annotations

import asyncio
from dataclasses import replace
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from vesu_liquidator.config import AppConfig
from vesu_liquidator.errors import ExecutionFailed, FatalError, OracleUnavailable
from vesu_liquidator.events import EventEmitter, EventType
from vesu_liquidator.models import (
    Amount,
    AssetConfig,
    ChainEvent,
    Classification,
    EventKind,
    LiquidationRecord,
    PositionRef,
)
from vesu_liquidator.services.health import HealthEvaluator
from vesu_liquidator.services.monitor import MonitorLoop
from vesu_liquidator.services.planner import LiquidationPlanner
from vesu_liquidator.store import PositionStore

NOW = 1_700_000_000.0

SMALL = PositionRef("prime", "ETH", "USDC", "0xa")
LARGE = PositionRef("prime", "ETH", "USDC", "0xb")


def _open(ref: PositionRef, block: int, collateral: str, debt: str) -> ChainEvent:
    return ChainEvent(
        block_number=block,
        tx_index=0,
        event_index=0,
        kind=EventKind.BORROWED,
        ref=ref,
        collateral_delta=Amount(Decimal(collateral)),
        debt_delta=Amount(Decimal(debt)),
    )


@pytest.fixture()
def store() -> PositionStore:
    store = PositionStore()
    store.apply_event(_open(SMALL, 10, "1.5", "2100"))
    store.apply_event(_open(LARGE, 11, "3", "4200"))
    store.mark_ready()
    return store


@pytest.fixture()
def pool(eth_config: AssetConfig, usdc_config: AssetConfig) -> MagicMock:
    pool = MagicMock()
    pool.asset_config = AsyncMock(
        side_effect=lambda pool_id, asset: eth_config if asset == "ETH" else usdc_config
    )
    return pool


@pytest.fixture()
def oracle(make_price) -> MagicMock:
    oracle = MagicMock()
    oracle.eth_price = "1600"

    async def get_prices(assets):
        return {
            a: make_price(a, oracle.eth_price if a == "ETH" else "1") for a in set(assets)
        }

    async def get_price(asset):
        return (await get_prices([asset]))[asset]

    oracle.get_prices = AsyncMock(side_effect=get_prices)
    oracle.get_price = AsyncMock(side_effect=get_price)
    return oracle


@pytest.fixture()
def executor() -> MagicMock:
    executor = MagicMock()
    executor.in_flight = MagicMock(return_value=False)
    executor.execute = AsyncMock(side_effect=lambda plan: _record(plan))
    executor.resolve_unknown = AsyncMock()
    return executor


def _record(plan) -> LiquidationRecord:
    return LiquidationRecord(
        liquidator_address="0x1111",
        transaction_ref="0xtx",
        collateral_seized=plan.expected_collateral,
        debt_repaid=plan.debt_to_repay,
        liquidation_bonus=Decimal("0.05"),
        timestamp=NOW,
        position_ref=plan.position_ref,
        plan_id=plan.plan_id,
    )


@pytest.fixture()
def clock() -> MagicMock:
    return MagicMock(return_value=NOW)


@pytest.fixture()
def monitor(
    store: PositionStore,
    pool: MagicMock,
    oracle: MagicMock,
    executor: MagicMock,
    emitter: EventEmitter,
    sample_app_config: AppConfig,
    clock: MagicMock,
) -> MonitorLoop:
    return MonitorLoop(
        store,
        pool,
        oracle,
        HealthEvaluator(sample_app_config, lambda p: False),
        LiquidationPlanner(sample_app_config, clock=clock),
        executor,
        emitter,
        sample_app_config,
        clock=clock,
    )


class TestTick:
    @pytest.mark.asyncio
    async def test_healthy_tick_plans_nothing(
        self, monitor: MonitorLoop, oracle, executor, recording_sink
    ) -> None:
        oracle.eth_price = "2500"

        summary = await monitor.tick()

        assert summary.evaluated == 2
        assert summary.classifications == {"healthy": 2}
        assert summary.plans == 0
        executor.execute.assert_not_awaited()
        assert recording_sink.of_type(EventType.TICK_COMPLETED)

    @pytest.mark.asyncio
    async def test_plans_ranked_by_profit(self, monitor: MonitorLoop, executor, recording_sink) -> None:
        summary = await monitor.tick()

        assert summary.plans == 2
        assert summary.confirmed == 2
        executed = [c.args[0].position_ref for c in executor.execute.await_args_list]
        assert executed == [LARGE, SMALL]
        created = recording_sink.of_type(EventType.PLAN_CREATED)
        assert len(created) == 2
        assert monitor.stats.executions_confirmed == 2

    @pytest.mark.asyncio
    async def test_failed_execution_does_not_stop_others(
        self, monitor: MonitorLoop, executor
    ) -> None:
        def execute(plan):
            if plan.position_ref == LARGE:
                raise ExecutionFailed("transaction reverted: slippage")
            return _record(plan)

        executor.execute.side_effect = execute

        summary = await monitor.tick()

        assert summary.confirmed == 1
        assert summary.failed == 1
        assert monitor.stats.executions_failed == 1

    @pytest.mark.asyncio
    async def test_in_flight_position_is_not_replanned(
        self, monitor: MonitorLoop, executor
    ) -> None:
        executor.in_flight.side_effect = lambda ref: ref == LARGE

        summary = await monitor.tick()

        assert summary.plans == 1
        assert executor.execute.await_args.args[0].position_ref == SMALL

    @pytest.mark.asyncio
    async def test_unresolved_plans_followed_up_each_tick(
        self, monitor: MonitorLoop, oracle, executor
    ) -> None:
        oracle.eth_price = "2500"

        await monitor.tick()

        executor.resolve_unknown.assert_awaited_once()
        positions = executor.resolve_unknown.await_args.args[0]
        assert set(positions) == {SMALL, LARGE}

    @pytest.mark.asyncio
    async def test_unknown_prices_are_skipped(
        self, monitor: MonitorLoop, oracle, executor, recording_sink
    ) -> None:
        oracle.get_prices.side_effect = None
        oracle.get_prices.return_value = {"ETH": OracleUnavailable("down"), "USDC": OracleUnavailable("down")}
        oracle.get_price.side_effect = OracleUnavailable("still down")

        summary = await monitor.tick()

        assert summary.classifications == {"unknown": 2}
        assert len(recording_sink.of_type(EventType.POSITION_SKIPPED)) == 2
        executor.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_asset_configs_cached_within_ttl(self, monitor: MonitorLoop, pool, oracle) -> None:
        oracle.eth_price = "2500"
        await monitor.tick()
        await monitor.tick()
        assert pool.asset_config.await_count == 2

    @pytest.mark.asyncio
    async def test_fatal_error_propagates(self, monitor: MonitorLoop, pool) -> None:
        pool.asset_config.side_effect = FatalError("pool misconfigured")
        with pytest.raises(FatalError):
            await monitor.tick()


class TestTransitions:
    @pytest.mark.asyncio
    async def test_classification_changes_are_emitted(
        self, monitor: MonitorLoop, oracle, recording_sink
    ) -> None:
        oracle.eth_price = "2500"
        await monitor.tick()
        await monitor.tick()

        transitions = recording_sink.of_type(EventType.HEALTH_TRANSITION)
        assert len(transitions) == 2
        assert all(t.payload["previous"] is None for t in transitions)
        assert all(t.payload["current"] is Classification.HEALTHY for t in transitions)

    @pytest.mark.asyncio
    async def test_liquidated_position_transition(
        self, monitor: MonitorLoop, store: PositionStore, oracle, recording_sink
    ) -> None:
        oracle.eth_price = "2500"
        await monitor.tick()

        store.apply_event(
            ChainEvent(
                block_number=20,
                tx_index=0,
                event_index=0,
                kind=EventKind.LIQUIDATED,
                ref=SMALL,
                collateral_delta=Amount(Decimal("-1.5")),
                debt_delta=Amount(Decimal("-2100")),
            )
        )
        await monitor.tick()

        last = recording_sink.of_type(EventType.HEALTH_TRANSITION)[-1]
        assert last.payload["position"] == str(SMALL)
        assert last.payload["current"] == "liquidated"


class TestTriggers:
    @pytest.mark.asyncio
    async def test_price_moved(self, monitor: MonitorLoop, oracle, make_price) -> None:
        oracle.eth_price = "2500"
        await monitor.tick()

        assert monitor.price_moved({"ETH": make_price("ETH", "2540")}) is None
        assert monitor.price_moved({"ETH": make_price("ETH", "2400")}) == "ETH"

    def test_new_block_trigger(self, monitor: MonitorLoop) -> None:
        monitor.notify_new_block(123)
        assert monitor._wake.is_set()
        assert monitor._trigger == "new_block"


class TestRevalidate:
    @pytest.mark.asyncio
    async def test_fresh_plan_is_kept(self, monitor: MonitorLoop, executor) -> None:
        await monitor.tick()
        plan = executor.execute.await_args.args[0]
        assert await monitor.revalidate(plan) is plan

    @pytest.mark.asyncio
    async def test_stale_plan_is_replanned(self, monitor: MonitorLoop, executor, clock) -> None:
        await monitor.tick()
        plan = executor.execute.await_args.args[0]

        clock.return_value = NOW + 60
        fresh = await monitor.revalidate(plan)

        assert fresh is not None
        assert fresh.plan_id != plan.plan_id
        assert fresh.created_at == NOW + 60

    @pytest.mark.asyncio
    async def test_plan_on_aged_prices_is_replanned(
        self, monitor: MonitorLoop, executor, clock
    ) -> None:
        await monitor.tick()
        plan = replace(executor.execute.await_args.args[0], price_timestamp=int(NOW) - 299)

        clock.return_value = NOW + 20
        fresh = await monitor.revalidate(plan)

        assert fresh is not None
        assert fresh.plan_id != plan.plan_id
        assert fresh.price_timestamp == int(NOW)

    @pytest.mark.asyncio
    async def test_stale_plan_discarded_when_healthy(
        self, monitor: MonitorLoop, executor, oracle, clock, recording_sink
    ) -> None:
        await monitor.tick()
        plan = executor.execute.await_args.args[0]

        clock.return_value = NOW + 60
        oracle.eth_price = "2500"

        assert await monitor.revalidate(plan) is None
        assert recording_sink.of_type(EventType.PLAN_DISCARDED)
        assert monitor.stats.plans_discarded == 1


class TestRun:
    @pytest.mark.asyncio
    async def test_fatal_error_halts_loop(
        self, monitor: MonitorLoop, pool, recording_sink
    ) -> None:
        pool.asset_config.side_effect = FatalError("corrupt store")

        with pytest.raises(FatalError):
            await asyncio.wait_for(monitor.run(), timeout=1)

        assert recording_sink.of_type(EventType.ENGINE_HALTED)

    @pytest.mark.asyncio
    async def test_recoverable_error_keeps_running(
        self, store: PositionStore, pool, oracle, executor, emitter, sample_app_config, clock
    ) -> None:
        config = replace(
            sample_app_config,
            engine=replace(sample_app_config.engine, tick_interval_seconds=0.01),
        )
        monitor = MonitorLoop(
            store,
            pool,
            oracle,
            HealthEvaluator(config, lambda p: False),
            LiquidationPlanner(config, clock=clock),
            executor,
            emitter,
            config,
            clock=clock,
        )
        oracle.get_prices.side_effect = RuntimeError("rpc hiccup")

        task = asyncio.create_task(monitor.run())
        await asyncio.sleep(0.1)
        assert not task.done()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
