"""Event ingestion: the single writer of position state."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from ..config import AppConfig
from ..errors import FatalError
from ..events import EventEmitter, EventType
from ..interfaces.event_source import EventSource
from ..interfaces.pool import PoolReader
from ..retry import RetryPolicy, retry_async
from ..store.checkpoint import load_checkpoint, save_checkpoint
from ..store.position_store import ApplyResult, PositionStore

logger = logging.getLogger(__name__)

# Blocks per getEvents range during replay and catch-up.
REPLAY_BLOCK_SPAN = 1000


class EventIngestor:
    """Replays history into the store, then follows the chain head."""

    def __init__(
        self,
        source: EventSource,
        pool: PoolReader,
        store: PositionStore,
        config: AppConfig,
        emitter: EventEmitter,
        retry_policy: RetryPolicy | None = None,
        on_new_block: Callable[[int], None] | None = None,
    ) -> None:
        self._source = source
        self._pool = pool
        self._store = store
        self._config = config
        self._emitter = emitter
        self._retry = retry_policy or RetryPolicy.from_config(config.retry)
        self._on_new_block = on_new_block
        self._next_block = config.chain.start_block
        self._last_checkpoint_block = 0

    @property
    def next_block(self) -> int:
        return self._next_block

    async def _head(self) -> int:
        return await retry_async(self._source.head_block, self._retry, "head block")

    async def _ingest_range(self, from_block: int, to_block: int) -> dict[ApplyResult, int]:
        totals = {result: 0 for result in ApplyResult}
        start = from_block
        while start <= to_block:
            end = min(start + REPLAY_BLOCK_SPAN - 1, to_block)
            events = await retry_async(
                lambda s=start, e=end: self._source.fetch(s, e),
                self._retry,
                f"events {start}-{end}",
            )
            counts = self._store.apply_batch(events)
            self._store.advance_to(end)
            self._next_block = end + 1
            for result, count in counts.items():
                totals[result] += count
            if counts[ApplyResult.QUEUED]:
                self._emitter.emit(
                    EventType.EVENT_QUEUED,
                    count=counts[ApplyResult.QUEUED],
                    from_block=start,
                    to_block=end,
                )
            start = end + 1
        return totals

    async def bootstrap(self) -> None:
        """Replay from the checkpoint (or start block) to head, then mark the store ready."""
        checkpoint = self._config.store.checkpoint_path
        if checkpoint:
            restored = load_checkpoint(self._store, checkpoint)
            if restored is not None:
                self._next_block = restored + 1
                self._last_checkpoint_block = restored

        head = await self._head()
        logger.info("Replaying events from block %d to %d", self._next_block, head)
        totals = await self._ingest_range(self._next_block, head)
        self._next_block = max(self._next_block, head + 1)
        await self.reconcile_pending()

        logger.info(
            "Replay complete: %d applied, %d duplicates, %d queued",
            totals[ApplyResult.APPLIED], totals[ApplyResult.DUPLICATE], totals[ApplyResult.QUEUED],
        )
        self._store.mark_ready()
        self._checkpoint(force=True)

    async def poll_once(self) -> int:
        """Ingest any new blocks; returns the number of applied events."""
        head = await self._head()
        if head < self._next_block:
            return 0

        totals = await self._ingest_range(self._next_block, head)
        self._next_block = head + 1
        await self.reconcile_pending()
        self._checkpoint()

        if self._on_new_block is not None:
            self._on_new_block(head)
        return totals[ApplyResult.APPLIED]

    async def reconcile_pending(self) -> None:
        """Overwrite positions with queued out-of-order events from a pool read at the store's block."""
        as_of = self._store.last_block
        for ref in sorted(self._store.needs_reconcile()):
            try:
                shares, debt = await retry_async(
                    lambda r=ref: self._pool.position(r, block_number=as_of),
                    self._retry,
                    f"position {ref}",
                )
            except FatalError:
                raise
            except Exception as e:
                logger.error("Reconciliation of %s failed, retrying next poll: %s", ref, e)
                continue

            reapplied = self._store.reconcile(ref, shares, debt, as_of)
            self._emitter.emit(
                EventType.POSITION_RECONCILED,
                position=str(ref),
                block=as_of,
                collateral_shares=shares,
                nominal_debt=debt,
                reapplied=reapplied,
            )

    def _checkpoint(self, force: bool = False) -> None:
        path = self._config.store.checkpoint_path
        if not path:
            return
        block = self._store.last_block
        if not force and block - self._last_checkpoint_block < self._config.store.checkpoint_every_blocks:
            return
        save_checkpoint(self._store, path)
        self._last_checkpoint_block = block

    async def run(self) -> None:
        """Bootstrap, then poll forever. After bootstrap only ``FatalError`` escapes."""
        if not self._store.is_ready:
            await self.bootstrap()

        interval = self._config.chain.poll_interval_seconds
        while True:
            try:
                await self.poll_once()
            except FatalError:
                raise
            except Exception as e:
                logger.error("Error in ingestion loop: %s", e)
            await asyncio.sleep(interval)
