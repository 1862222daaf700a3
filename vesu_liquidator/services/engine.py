"""Engine wiring: builds every component from ``AppConfig`` and runs the tasks."""
from __future__ import annotations

import asyncio
import logging

from cachetools import TTLCache

from ..chains.starknet import StarknetClient
from ..config import AppConfig
from ..events import EventEmitter, EventType, JsonLinesEventSink, LoggingEventSink
from ..interfaces.chain import ChainClient
from ..interfaces.event_sink import EventSink
from ..interfaces.liquidation import LiquidationGateway, TransactionSigner
from ..interfaces.price_source import PriceSource
from ..oracles import OracleClient, PragmaSource, PythSource
from ..oracles.client import PRICE_CACHE_SIZE
from ..protocols.vesu import VesuEventSource, VesuLiquidationGateway, VesuPool
from ..retry import RetryPolicy
from ..store.position_store import PositionStore
from .executor import LiquidationExecutor
from .health import HealthEvaluator
from .ingestion import EventIngestor
from .monitor import MonitorLoop
from .planner import LiquidationPlanner

logger = logging.getLogger(__name__)


class Engine:
    """Owns the store and the three long-running tasks: ingestion, price watch, evaluation."""

    def __init__(
        self,
        config: AppConfig,
        chain_client: ChainClient | None = None,
        signer: TransactionSigner | None = None,
        sinks: list[EventSink] | None = None,
    ) -> None:
        self.config = config
        self.chain_client: ChainClient = chain_client or StarknetClient(config.chain)
        retry_policy = RetryPolicy.from_config(config.retry)

        # Events
        if sinks is None:
            sinks = [LoggingEventSink()]
            if config.events.jsonl_path:
                sinks.append(JsonLinesEventSink(config.events.jsonl_path))
        self.emitter = EventEmitter(sinks)

        # Oracle
        sources: list[tuple[PriceSource, int]] = [
            (PragmaSource(self.chain_client, config.oracle.pragma), config.oracle.pragma.min_sources)
        ]
        if config.oracle.pyth.enabled:
            sources.append(
                (
                    PythSource(config.oracle.pyth, timeout=config.engine.call_timeout_seconds),
                    config.oracle.pyth.min_sources,
                )
            )
        self.oracle = OracleClient(
            sources,
            staleness_tolerance=config.oracle.staleness_tolerance_seconds,
            cache=TTLCache(maxsize=PRICE_CACHE_SIZE, ttl=config.oracle.cache_ttl_seconds),
            timeout=config.engine.call_timeout_seconds,
        )

        # Protocol
        self.pool = VesuPool(self.chain_client, config)
        self.store = PositionStore()

        gateway: LiquidationGateway | None = None
        if signer is not None and not config.liquidation.dry_run:
            gateway = VesuLiquidationGateway(self.chain_client, signer, config)
        else:
            logger.warning("No transaction signer or dry_run set: liquidations will not be submitted")

        # Pipeline
        self.evaluator = HealthEvaluator(config, self.oracle.is_stale)
        self.planner = LiquidationPlanner(config)
        self.executor = LiquidationExecutor(gateway, self.oracle, config, self.emitter)
        self.monitor = MonitorLoop(
            self.store,
            self.pool,
            self.oracle,
            self.evaluator,
            self.planner,
            self.executor,
            self.emitter,
            config,
            retry_policy=retry_policy,
        )
        self.ingestor = EventIngestor(
            VesuEventSource(self.chain_client, config),
            self.pool,
            self.store,
            config,
            self.emitter,
            retry_policy=retry_policy,
            on_new_block=self.monitor.notify_new_block,
        )

    async def run(self) -> None:
        """Run until a task fails; the others are cancelled and the failure re-raised."""
        tasks = [
            asyncio.create_task(self.ingestor.run(), name="ingestion"),
            asyncio.create_task(self.monitor.watch_prices(), name="price-watch"),
            asyncio.create_task(self.monitor.run(), name="monitor"),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            if task.cancelled() or task.exception() is None:
                continue
            error = task.exception()
            logger.critical("Task %s failed: %s", task.get_name(), error)
            if task.get_name() != "monitor":
                self.emitter.emit(EventType.ENGINE_HALTED, task=task.get_name(), reason=str(error))
            raise error
