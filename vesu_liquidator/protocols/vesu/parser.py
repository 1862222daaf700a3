"""Pure decoding functions for Vesu pool data and events. No I/O."""
from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from ...chains.starknet.codec import from_i257, from_raw, from_u256, get_selector_from_name
from ...errors import ValidationError
from ...models import Amount, AssetConfig, ChainEvent, Denomination, EventKind, PositionRef

# Collateral shares, the rate accumulator and percentages are 18-decimal fixed point.
SCALE_DECIMALS = 18

MODIFY_POSITION = get_selector_from_name("ModifyPosition")
LIQUIDATE_POSITION = get_selector_from_name("LiquidatePosition")

_ASSET_CONFIG_FELTS = 22


def _hex_int(value: str | int) -> int:
    return int(value, 16) if isinstance(value, str) else int(value)


def symbol_map(assets: Mapping[str, Any]) -> dict[int, str]:
    """Map asset contract address (as int) to its configured symbol."""
    return {_hex_int(info.address): symbol for symbol, info in assets.items() if info.address}


def parse_position(raw: list[int], debt_decimals: int) -> tuple[Decimal, Decimal]:
    """Decode ``position(collateral_asset, debt_asset, user)``.

    Layout: Position { collateral_shares: u256, nominal_debt: u256 } followed
    by the derived collateral and debt amounts, which are ignored here.
    Returns Native units: (collateral_shares, nominal_debt).
    """
    if len(raw) < 4:
        raise ValidationError(f"Malformed position response: {raw}")
    shares = from_u256(raw[0], raw[1])
    nominal_debt = from_u256(raw[2], raw[3])
    return from_raw(shares, SCALE_DECIMALS), from_raw(nominal_debt, debt_decimals)


def parse_asset_config(raw: list[int]) -> AssetConfig:
    """Decode ``asset_config(asset)``.

    Layout: total_collateral_shares, total_nominal_debt, reserve,
    max_utilization, floor, scale (all u256), is_legacy (bool),
    last_updated (u64), last_rate_accumulator, last_full_utilization_rate,
    fee_rate, fee_shares (all u256).
    """
    if len(raw) < _ASSET_CONFIG_FELTS:
        raise ValidationError(f"Malformed asset config response ({len(raw)} felts)")

    def u256(index: int) -> int:
        return from_u256(raw[index], raw[index + 1])

    scale = u256(10)
    if scale <= 0 or 10 ** (len(str(scale)) - 1) != scale:
        raise ValidationError(f"Asset scale is not a power of ten: {scale}")
    decimals = len(str(scale)) - 1

    return AssetConfig(
        total_collateral_shares=from_raw(u256(0), SCALE_DECIMALS),
        total_nominal_debt=from_raw(u256(2), decimals),
        reserve=from_raw(u256(4), decimals),
        max_utilization=from_raw(u256(6), SCALE_DECIMALS),
        fee_rate=from_raw(u256(18), SCALE_DECIMALS),
        last_rate_accumulator=from_raw(u256(14), SCALE_DECIMALS),
        last_updated=int(raw[13]),
        decimals=decimals,
    )


def classify_event(is_liquidation: bool, collateral_delta: int, debt_delta: int) -> EventKind:
    if is_liquidation:
        return EventKind.LIQUIDATED
    if debt_delta > 0:
        return EventKind.BORROWED
    if debt_delta < 0:
        return EventKind.REPAID
    if collateral_delta < 0:
        return EventKind.WITHDRAWN
    return EventKind.SUPPLIED


def parse_deltas(data: list[int]) -> tuple[int, int, int, int]:
    """Four i257 values: collateral, collateral shares, debt, nominal debt deltas."""
    if len(data) < 12:
        raise ValidationError(f"Malformed position event data ({len(data)} felts)")
    return (
        from_i257(data[0], data[1], data[2]),
        from_i257(data[3], data[4], data[5]),
        from_i257(data[6], data[7], data[8]),
        from_i257(data[9], data[10], data[11]),
    )


def parse_event(
    raw: dict[str, Any],
    pool_id: str,
    symbols: Mapping[int, str],
    decimals: Mapping[str, int],
    tx_index: int,
    event_index: int,
) -> ChainEvent | None:
    """Decode one emitted pool event into a ``ChainEvent`` in Native units.

    Keys are ``[selector, collateral_asset, debt_asset, user]``. Returns None
    for other event types and for pairs whose assets are not configured.
    """
    keys = [_hex_int(k) for k in raw.get("keys", [])]
    if not keys or keys[0] not in (MODIFY_POSITION, LIQUIDATE_POSITION):
        return None
    if len(keys) < 4:
        raise ValidationError(f"Position event with {len(keys)} keys in tx {raw.get('transaction_hash')}")
    if raw.get("block_number") is None:
        raise ValidationError(f"Event without block number in tx {raw.get('transaction_hash')}")

    collateral_asset = symbols.get(keys[1])
    debt_asset = symbols.get(keys[2])
    if collateral_asset is None or debt_asset is None:
        return None

    data = [_hex_int(d) for d in raw.get("data", [])]
    _, shares_delta, _, nominal_debt_delta = parse_deltas(data)
    is_liquidation = keys[0] == LIQUIDATE_POSITION

    return ChainEvent(
        block_number=int(raw["block_number"]),
        tx_index=tx_index,
        event_index=event_index,
        kind=classify_event(is_liquidation, shares_delta, nominal_debt_delta),
        ref=PositionRef(
            pool_id=pool_id,
            collateral_asset=collateral_asset,
            debt_asset=debt_asset,
            user=hex(keys[3]),
        ),
        collateral_delta=Amount(from_raw(shares_delta, SCALE_DECIMALS), Denomination.NATIVE),
        debt_delta=Amount(from_raw(nominal_debt_delta, decimals.get(debt_asset, 18)), Denomination.NATIVE),
        tx_hash=raw.get("transaction_hash", ""),
    )


def assign_indices(raw_events: list[dict[str, Any]]) -> list[tuple[dict[str, Any], int, int]]:
    """Attach (tx_index, event_index) to events returned in chain order.

    Uses the node's ``transaction_index``/``event_index`` when present;
    otherwise derives ordinals from the order of appearance within each block.
    """
    indexed: list[tuple[dict[str, Any], int, int]] = []
    tx_order: dict[int | None, dict[str, int]] = {}
    event_counts: dict[tuple[int | None, str], int] = {}

    for raw in raw_events:
        block = raw.get("block_number")
        tx_hash = raw.get("transaction_hash", "")
        if "transaction_index" in raw and "event_index" in raw:
            indexed.append((raw, int(raw["transaction_index"]), int(raw["event_index"])))
            continue
        txs = tx_order.setdefault(block, {})
        tx_index = txs.setdefault(tx_hash, len(txs))
        event_index = event_counts.get((block, tx_hash), 0)
        event_counts[(block, tx_hash)] = event_index + 1
        indexed.append((raw, tx_index, event_index))
    return indexed


def parse_liquidation_amounts(
    receipt_events: list[dict[str, Any]],
    pool_address: str,
    collateral_decimals: int,
    debt_decimals: int,
) -> tuple[Decimal, Decimal]:
    """Collateral seized and debt repaid (Assets) from a receipt's LiquidatePosition event."""
    pool = _hex_int(pool_address)
    for event in receipt_events:
        keys = [_hex_int(k) for k in event.get("keys", [])]
        if not keys or keys[0] != LIQUIDATE_POSITION:
            continue
        if _hex_int(event.get("from_address", "0x0")) != pool:
            continue
        collateral_delta, _, debt_delta, _ = parse_deltas([_hex_int(d) for d in event.get("data", [])])
        return (
            from_raw(abs(collateral_delta), collateral_decimals),
            from_raw(abs(debt_delta), debt_decimals),
        )
    return Decimal(0), Decimal(0)
