"""Unit tests for store checkpoints."""
from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path

import pytest

from vesu_liquidator.errors import FatalError
from vesu_liquidator.models import Amount, ChainEvent, EventKind, PositionRef
from vesu_liquidator.store import ApplyResult, PositionStore, load_checkpoint, save_checkpoint
from vesu_liquidator.store.checkpoint import dump_store, load_store


@pytest.fixture()
def populated(sample_ref: PositionRef) -> PositionStore:
    store = PositionStore()
    store.apply_event(
        ChainEvent(
            block_number=42,
            tx_index=3,
            event_index=1,
            kind=EventKind.SUPPLIED,
            ref=sample_ref,
            collateral_delta=Amount(Decimal("1.5")),
            debt_delta=Amount(Decimal("2100.000001")),
        )
    )
    store.advance_to(50)
    return store


class TestCheckpoint:
    def test_round_trip(self, tmp_path: Path, populated: PositionStore, sample_ref) -> None:
        path = tmp_path / "state" / "checkpoint.json"
        save_checkpoint(populated, path)

        restored = PositionStore()
        assert load_checkpoint(restored, path) == 50

        position = restored.get(sample_ref)
        assert position.nominal_debt == Decimal("2100.000001")
        assert position.last_block == 42
        assert restored.last_block == 50

    def test_restored_order_keys_reject_replayed_events(
        self, populated: PositionStore, sample_ref
    ) -> None:
        restored = PositionStore()
        load_store(restored, dump_store(populated))

        replay = ChainEvent(
            block_number=42, tx_index=3, event_index=1, kind=EventKind.SUPPLIED, ref=sample_ref
        )
        assert restored.apply_event(replay) is ApplyResult.DUPLICATE

    def test_missing_file(self, tmp_path: Path) -> None:
        assert load_checkpoint(PositionStore(), tmp_path / "none.json") is None

    def test_bad_version(self, populated: PositionStore) -> None:
        data = dump_store(populated)
        data["version"] = 99
        with pytest.raises(FatalError, match="version"):
            load_store(PositionStore(), data)

    def test_corrupt_json(self, tmp_path: Path) -> None:
        path = tmp_path / "checkpoint.json"
        path.write_text("{not json")
        with pytest.raises(FatalError):
            load_checkpoint(PositionStore(), path)

    def test_corrupt_amount(self, populated: PositionStore) -> None:
        data = dump_store(populated)
        data["positions"][0]["nominal_debt"] = "lots"
        with pytest.raises(FatalError, match="Corrupt"):
            load_store(PositionStore(), data)

    def test_cannot_restore_into_live_store(self, populated: PositionStore) -> None:
        live = PositionStore()
        live.mark_ready()
        with pytest.raises(FatalError):
            load_store(live, dump_store(populated))

    def test_file_is_plain_json(self, tmp_path: Path, populated: PositionStore) -> None:
        path = tmp_path / "checkpoint.json"
        save_checkpoint(populated, path)
        data = json.loads(path.read_text())
        assert data["positions"][0]["collateral_shares"] == "1.5"
        assert not (tmp_path / "checkpoint.json.tmp").exists()

    def test_journal_survives_restart(self, tmp_path: Path, populated: PositionStore, sample_ref) -> None:
        populated.apply_event(
            ChainEvent(
                block_number=48,
                tx_index=0,
                event_index=2,
                kind=EventKind.BORROWED,
                ref=sample_ref,
                debt_delta=Amount(Decimal("-100")),
                tx_hash="0xbeef",
            )
        )
        path = tmp_path / "checkpoint.json"
        save_checkpoint(populated, path)

        restored = PositionStore()
        load_checkpoint(restored, path)

        assert restored.journal(sample_ref) == populated.journal(sample_ref)
        # An already-journaled event below the last key is a replay, not a gap.
        earlier = ChainEvent(
            block_number=42, tx_index=3, event_index=1, kind=EventKind.SUPPLIED, ref=sample_ref
        )
        assert restored.apply_event(earlier) is ApplyResult.DUPLICATE
        assert restored.needs_reconcile() == set()

    def test_reconciled_block_survives_restart(self, populated: PositionStore, sample_ref) -> None:
        populated.reconcile(sample_ref, Decimal("2"), Decimal("2000"), as_of_block=60)

        restored = PositionStore()
        load_store(restored, json.loads(json.dumps(dump_store(populated))))

        covered = ChainEvent(
            block_number=59,
            tx_index=9,
            event_index=0,
            kind=EventKind.SUPPLIED,
            ref=sample_ref,
            collateral_delta=Amount(Decimal("1")),
        )
        assert restored.apply_event(covered) is ApplyResult.DUPLICATE
        assert restored.get(sample_ref).collateral_shares == Decimal("2")

    def test_corrupt_journal_event(self, populated: PositionStore) -> None:
        data = dump_store(populated)
        data["journal"][0]["events"][0]["kind"] = "teleported"
        with pytest.raises(FatalError, match="Corrupt"):
            load_store(PositionStore(), data)
