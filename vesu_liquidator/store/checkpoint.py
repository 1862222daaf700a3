"""JSON checkpoint of the position store, so startup replay can resume
from the last persisted block instead of the pool's deployment block."""
from __future__ import annotations

import json
import logging
import os
from decimal import Decimal
from pathlib import Path
from typing import Any

from ..errors import FatalError
from ..models import Amount, ChainEvent, Denomination, EventKind, Position, PositionRef
from .position_store import PositionStore

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1


def _ref_to_dict(ref: PositionRef) -> dict[str, str]:
    return {
        "pool_id": ref.pool_id,
        "collateral_asset": ref.collateral_asset,
        "debt_asset": ref.debt_asset,
        "user": ref.user,
    }


def _ref_from_dict(raw: dict[str, str]) -> PositionRef:
    return PositionRef(
        pool_id=raw["pool_id"],
        collateral_asset=raw["collateral_asset"],
        debt_asset=raw["debt_asset"],
        user=raw["user"],
    )


def _event_to_dict(event: ChainEvent) -> dict[str, Any]:
    return {
        "key": list(event.order_key),
        "kind": event.kind.value,
        "collateral_delta": [str(event.collateral_delta.value), event.collateral_delta.denomination.value],
        "debt_delta": [str(event.debt_delta.value), event.debt_delta.denomination.value],
        "tx_hash": event.tx_hash,
    }


def _event_from_dict(ref: PositionRef, raw: dict[str, Any]) -> ChainEvent:
    block, tx_index, event_index = (int(x) for x in raw["key"])
    collateral, collateral_unit = raw["collateral_delta"]
    debt, debt_unit = raw["debt_delta"]
    return ChainEvent(
        block_number=block,
        tx_index=tx_index,
        event_index=event_index,
        kind=EventKind(raw["kind"]),
        ref=ref,
        collateral_delta=Amount(Decimal(collateral), Denomination(collateral_unit)),
        debt_delta=Amount(Decimal(debt), Denomination(debt_unit)),
        tx_hash=raw.get("tx_hash", ""),
    )


def dump_store(store: PositionStore) -> dict[str, Any]:
    state = store.export_state()
    return {
        "version": CHECKPOINT_VERSION,
        "last_block": state.last_block,
        "positions": [
            {
                "ref": _ref_to_dict(p.ref),
                "collateral_shares": str(p.collateral_shares),
                "nominal_debt": str(p.nominal_debt),
                "last_block": p.last_block,
            }
            for p in sorted(state.positions, key=lambda p: p.ref)
        ],
        "last_keys": [
            {"ref": _ref_to_dict(ref), "key": list(key)}
            for ref, key in sorted(state.last_keys.items())
        ],
        "reconciled_at": [
            {"ref": _ref_to_dict(ref), "block": block}
            for ref, block in sorted(state.reconciled_at.items())
        ],
        "journal": [
            {"ref": _ref_to_dict(ref), "events": [_event_to_dict(e) for e in events]}
            for ref, events in sorted(state.journal.items())
        ],
    }


def load_store(store: PositionStore, data: dict[str, Any]) -> int:
    """Restore ``store`` from a dumped checkpoint; returns the checkpoint block."""
    if data.get("version") != CHECKPOINT_VERSION:
        raise FatalError(f"Unsupported checkpoint version: {data.get('version')!r}")
    try:
        positions = [
            Position(
                ref=_ref_from_dict(p["ref"]),
                collateral_shares=Decimal(p["collateral_shares"]),
                nominal_debt=Decimal(p["nominal_debt"]),
                last_block=int(p["last_block"]),
            )
            for p in data.get("positions", [])
        ]
        last_keys = {
            _ref_from_dict(k["ref"]): tuple(int(x) for x in k["key"])
            for k in data.get("last_keys", [])
        }
        reconciled_at = {
            _ref_from_dict(r["ref"]): int(r["block"]) for r in data.get("reconciled_at", [])
        }
        journal: dict[PositionRef, list[ChainEvent]] = {}
        for entry in data.get("journal", []):
            ref = _ref_from_dict(entry["ref"])
            journal[ref] = [_event_from_dict(ref, e) for e in entry["events"]]
        last_block = int(data["last_block"])
    except (KeyError, TypeError, ValueError, ArithmeticError) as e:
        raise FatalError(f"Corrupt checkpoint: {e}") from e

    store.restore_state(positions, last_keys, last_block, reconciled_at=reconciled_at, journal=journal)
    return last_block


def save_checkpoint(store: PositionStore, path: str | Path) -> None:
    """Write atomically: a crash mid-write leaves the previous checkpoint intact."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w") as f:
        json.dump(dump_store(store), f, indent=2)
    os.replace(tmp, path)
    logger.debug("Checkpoint written to %s at block %d", path, store.last_block)


def load_checkpoint(store: PositionStore, path: str | Path) -> int | None:
    """Restore from ``path`` if it exists; returns the checkpoint block or None."""
    path = Path(path)
    if not path.exists():
        return None
    with open(path) as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise FatalError(f"Corrupt checkpoint {path}: {e}") from e
    block = load_store(store, data)
    logger.info("Restored %d positions from checkpoint %s (block %d)", len(store), path, block)
    return block
