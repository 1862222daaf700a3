"""In-memory index of open positions, fed by chain events.

The ingestion task is the only writer. Readers take an immutable
``StoreSnapshot`` per tick; because every mutation below is synchronous, a
snapshot can never observe a half-applied batch.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from types import MappingProxyType

from ..errors import FatalError, StoreNotReady, ValidationError
from ..models import AssetConfig, ChainEvent, Denomination, Position, PositionRef

logger = logging.getLogger(__name__)

OrderKey = tuple[int, int, int]

# Sorts after every (tx_index, event_index) inside a block.
_END_OF_BLOCK = 2**63


class ApplyResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    QUEUED = "queued"


@dataclass(frozen=True)
class StoreState:
    """Everything a checkpoint needs to resume ingestion without replaying history."""

    positions: list[Position]
    last_keys: dict[PositionRef, OrderKey]
    last_block: int
    reconciled_at: dict[PositionRef, int] = field(default_factory=dict)
    journal: dict[PositionRef, list[ChainEvent]] = field(default_factory=dict)


@dataclass(frozen=True)
class StoreSnapshot:
    """Consistent, read-only view of the store at one instant."""

    positions: Mapping[PositionRef, Position]
    asset_configs: Mapping[tuple[str, str], AssetConfig]
    last_block: int
    taken_at: float = field(default_factory=time.time)

    def positions_for_pool(self, pool_id: str) -> Iterator[Position]:
        return (p for ref, p in self.positions.items() if ref.pool_id == pool_id)

    def asset_config(self, pool_id: str, asset: str) -> AssetConfig | None:
        return self.asset_configs.get((pool_id, asset))

    def referenced_assets(self) -> set[str]:
        assets: set[str] = set()
        for ref in self.positions:
            assets.add(ref.collateral_asset)
            assets.add(ref.debt_asset)
        return assets

    def referenced_pool_assets(self) -> set[tuple[str, str]]:
        pairs: set[tuple[str, str]] = set()
        for ref in self.positions:
            pairs.add((ref.pool_id, ref.collateral_asset))
            pairs.add((ref.pool_id, ref.debt_asset))
        return pairs


class PositionStore:
    def __init__(self) -> None:
        self._positions: dict[PositionRef, Position] = {}
        self._last_key: dict[PositionRef, OrderKey] = {}
        self._reconciled_at: dict[PositionRef, int] = {}
        self._journal: dict[PositionRef, list[ChainEvent]] = {}
        self._journal_keys: dict[PositionRef, set[OrderKey]] = {}
        self._pending: dict[PositionRef, list[ChainEvent]] = {}
        self._asset_configs: dict[tuple[str, str], AssetConfig] = {}
        self._asset_config_fetched: dict[tuple[str, str], float] = {}
        self._last_block = 0
        self._ready = asyncio.Event()

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    def mark_ready(self) -> None:
        logger.info(
            "Position store ready: %d open positions as of block %d",
            len(self._positions), self._last_block,
        )
        self._ready.set()

    async def wait_ready(self) -> None:
        await self._ready.wait()

    # ------------------------------------------------------------------
    # Event application (single writer)
    # ------------------------------------------------------------------

    def apply_event(self, event: ChainEvent) -> ApplyResult:
        ref = event.ref
        key = event.order_key

        if event.block_number <= self._reconciled_at.get(ref, -1):
            # Already reflected in a reconciled snapshot
            return ApplyResult.DUPLICATE

        last = self._last_key.get(ref)
        if last is not None:
            if key == last:
                return ApplyResult.DUPLICATE
            if key < last:
                if key in self._journal_keys.get(ref, ()):
                    return ApplyResult.DUPLICATE
                self._pending.setdefault(ref, []).append(event)
                logger.warning(
                    "Out-of-order event for %s at %s (last applied %s); queued for reconciliation",
                    ref, key, last,
                )
                return ApplyResult.QUEUED

        for delta in (event.collateral_delta, event.debt_delta):
            if delta.denomination is not Denomination.NATIVE:
                raise ValidationError(
                    f"Position events must be in Native units, got {delta.denomination.value}",
                    ref=str(ref),
                )

        current = self._positions.get(ref) or Position(ref=ref)
        collateral = current.collateral_shares + event.collateral_delta.value
        debt = current.nominal_debt + event.debt_delta.value
        if collateral < 0 or debt < 0:
            raise FatalError(
                f"Event at {key} drives {ref} negative "
                f"(collateral_shares={collateral}, nominal_debt={debt})",
                ref=str(ref),
            )

        updated = replace(
            current,
            collateral_shares=collateral,
            nominal_debt=debt,
            last_block=event.block_number,
        )
        self._journal.setdefault(ref, []).append(event)
        self._journal_keys.setdefault(ref, set()).add(key)
        self._last_key[ref] = key
        self._last_block = max(self._last_block, event.block_number)

        if updated.is_closed:
            self._positions.pop(ref, None)
            logger.info("Position %s closed at block %d", ref, event.block_number)
        else:
            self._positions[ref] = updated
        return ApplyResult.APPLIED

    def apply_batch(self, events: Iterable[ChainEvent]) -> dict[ApplyResult, int]:
        """Apply events sorted into chain order; returns counts per result."""
        counts = {result: 0 for result in ApplyResult}
        for event in sorted(events, key=lambda e: e.order_key):
            counts[self.apply_event(event)] += 1
        return counts

    def advance_to(self, block_number: int) -> None:
        """Record that every event up to ``block_number`` has been seen."""
        self._last_block = max(self._last_block, block_number)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def needs_reconcile(self) -> set[PositionRef]:
        return {ref for ref, events in self._pending.items() if events}

    def pending(self, ref: PositionRef) -> list[ChainEvent]:
        return list(self._pending.get(ref, []))

    def reconcile(
        self,
        ref: PositionRef,
        collateral_shares: Decimal,
        nominal_debt: Decimal,
        as_of_block: int,
    ) -> int:
        """Overwrite a position from a pool read taken at ``as_of_block``.

        Queued events at or below that block are dropped; later ones are
        re-applied in order. Returns the number of re-applied events.
        """
        if collateral_shares < 0 or nominal_debt < 0:
            raise ValidationError(f"Pool returned negative balances for {ref}")

        position = Position(
            ref=ref,
            collateral_shares=collateral_shares,
            nominal_debt=nominal_debt,
            last_block=as_of_block,
        )
        if position.is_closed:
            self._positions.pop(ref, None)
        else:
            self._positions[ref] = position
        self._reconciled_at[ref] = as_of_block
        self._last_key[ref] = (as_of_block, _END_OF_BLOCK, _END_OF_BLOCK)
        self._last_block = max(self._last_block, as_of_block)

        later = [e for e in self._pending.pop(ref, []) if e.block_number > as_of_block]
        for event in sorted(later, key=lambda e: e.order_key):
            self.apply_event(event)
        logger.info("Reconciled %s at block %d (%d queued events re-applied)", ref, as_of_block, len(later))
        return len(later)

    # ------------------------------------------------------------------
    # Asset configs
    # ------------------------------------------------------------------

    def update_asset_config(
        self, pool_id: str, asset: str, config: AssetConfig, fetched_at: float | None = None
    ) -> bool:
        """Store a freshly read asset config; a lower accumulator is a stale read and is ignored."""
        key = (pool_id, asset)
        existing = self._asset_configs.get(key)
        if existing is not None and config.last_rate_accumulator < existing.last_rate_accumulator:
            logger.warning(
                "Ignoring stale asset config for %s/%s: accumulator %s < %s",
                pool_id, asset, config.last_rate_accumulator, existing.last_rate_accumulator,
            )
            return False
        self._asset_configs[key] = config
        self._asset_config_fetched[key] = time.time() if fetched_at is None else fetched_at
        return True

    def asset_config_age(self, pool_id: str, asset: str, now: float | None = None) -> float | None:
        fetched = self._asset_config_fetched.get((pool_id, asset))
        if fetched is None:
            return None
        return (time.time() if now is None else now) - fetched

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def last_block(self) -> int:
        return self._last_block

    def get(self, ref: PositionRef) -> Position | None:
        return self._positions.get(ref)

    def positions_for_pool(self, pool_id: str) -> Iterator[Position]:
        return (p for ref, p in list(self._positions.items()) if ref.pool_id == pool_id)

    def journal(self, ref: PositionRef) -> tuple[ChainEvent, ...]:
        """Every event applied to a position, including closed ones."""
        return tuple(self._journal.get(ref, ()))

    def __len__(self) -> int:
        return len(self._positions)

    def snapshot(self) -> StoreSnapshot:
        if not self.is_ready:
            raise StoreNotReady("Position store has not finished replaying events")
        return StoreSnapshot(
            positions=MappingProxyType(dict(self._positions)),
            asset_configs=MappingProxyType(dict(self._asset_configs)),
            last_block=self._last_block,
        )

    # ------------------------------------------------------------------
    # Checkpoint support
    # ------------------------------------------------------------------

    def export_state(self) -> StoreState:
        return StoreState(
            positions=list(self._positions.values()),
            last_keys=dict(self._last_key),
            last_block=self._last_block,
            reconciled_at=dict(self._reconciled_at),
            journal={ref: list(events) for ref, events in self._journal.items()},
        )

    def restore_state(
        self,
        positions: Iterable[Position],
        last_keys: Mapping[PositionRef, OrderKey],
        last_block: int,
        reconciled_at: Mapping[PositionRef, int] | None = None,
        journal: Mapping[PositionRef, Iterable[ChainEvent]] | None = None,
    ) -> None:
        if self.is_ready:
            raise FatalError("Cannot restore a checkpoint into a live store")
        self._positions = {p.ref: p for p in positions if not p.is_closed}
        self._last_key = dict(last_keys)
        self._last_block = last_block
        self._reconciled_at = dict(reconciled_at or {})
        self._journal = {ref: list(events) for ref, events in (journal or {}).items()}
        self._journal_keys = {
            ref: {e.order_key for e in events} for ref, events in self._journal.items()
        }
