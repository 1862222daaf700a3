"""Data models, all frozen (immutable)."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

INFINITY = Decimal("Infinity")
ZERO = Decimal(0)


class Denomination(str, Enum):
    ASSETS = "assets"
    NATIVE = "native"


class AmountKind(str, Enum):
    """Which side of a position an amount belongs to."""

    COLLATERAL = "collateral"
    DEBT = "debt"


@dataclass(frozen=True)
class Amount:
    """Signed quantity tagged with its denomination.

    Positive values deposit/borrow, negative values withdraw/repay.
    """

    value: Decimal
    denomination: Denomination = Denomination.NATIVE

    @classmethod
    def zero(cls, denomination: Denomination = Denomination.NATIVE) -> Amount:
        return cls(ZERO, denomination)

    def is_zero(self) -> bool:
        return self.value == 0


@dataclass(frozen=True)
class AssetConfig:
    """Per-asset pool state as read from the pool contract.

    All quantities are in whole-token units; ``last_rate_accumulator`` is
    dimensionless and starts at 1.
    """

    total_collateral_shares: Decimal
    total_nominal_debt: Decimal
    reserve: Decimal
    max_utilization: Decimal
    fee_rate: Decimal
    last_rate_accumulator: Decimal
    last_updated: int
    decimals: int = 18

    @property
    def total_borrowed_assets(self) -> Decimal:
        return self.total_nominal_debt * self.last_rate_accumulator

    @property
    def total_supplied_assets(self) -> Decimal:
        return self.reserve + self.total_borrowed_assets

    @property
    def utilization(self) -> Decimal:
        supplied = self.total_supplied_assets
        if supplied == 0:
            return ZERO
        return self.total_borrowed_assets / supplied


@dataclass(frozen=True, order=True)
class PositionRef:
    """Identity of a position: (pool, collateral asset, debt asset, user)."""

    pool_id: str
    collateral_asset: str
    debt_asset: str
    user: str

    def __str__(self) -> str:
        return f"{self.pool_id}:{self.collateral_asset}/{self.debt_asset}:{self.user}"


@dataclass(frozen=True)
class Position:
    """Position balances in Native units (shares / nominal debt)."""

    ref: PositionRef
    collateral_shares: Decimal = ZERO
    nominal_debt: Decimal = ZERO
    last_block: int = 0

    @property
    def has_debt(self) -> bool:
        return self.nominal_debt > 0

    @property
    def is_closed(self) -> bool:
        return self.collateral_shares == 0 and self.nominal_debt == 0


class EventKind(str, Enum):
    SUPPLIED = "supplied"
    BORROWED = "borrowed"
    REPAID = "repaid"
    WITHDRAWN = "withdrawn"
    LIQUIDATED = "liquidated"


@dataclass(frozen=True)
class ChainEvent:
    """A position-modifying event observed on-chain, in Native units."""

    block_number: int
    tx_index: int
    event_index: int
    kind: EventKind
    ref: PositionRef
    collateral_delta: Amount = field(default_factory=Amount.zero)
    debt_delta: Amount = field(default_factory=Amount.zero)
    tx_hash: str = ""

    @property
    def order_key(self) -> tuple[int, int, int]:
        return (self.block_number, self.tx_index, self.event_index)


@dataclass(frozen=True)
class PricePoint:
    """Oracle price for one asset, in USD per whole token."""

    asset: str
    price: Decimal
    decimals: int
    last_updated: int
    num_sources: int
    source: str = ""


class Classification(str, Enum):
    HEALTHY = "healthy"
    AT_RISK = "at_risk"
    CRITICAL = "critical"
    LIQUIDATABLE = "liquidatable"
    UNKNOWN = "unknown"

    @property
    def is_at_risk(self) -> bool:
        """Critical is a subset of at-risk, kept separate for alerting."""
        return self in (Classification.AT_RISK, Classification.CRITICAL)


@dataclass(frozen=True)
class HealthReport:
    ref: PositionRef
    classification: Classification
    health_factor: Decimal | None = None
    collateral_assets: Decimal = ZERO
    debt_assets: Decimal = ZERO
    collateral_price: Decimal | None = None
    debt_price: Decimal | None = None
    collateral_value: Decimal = ZERO
    debt_value: Decimal = ZERO
    risk_adjusted_collateral: Decimal = ZERO
    price_timestamp: int = 0
    reason: str = ""


class LiquidationKind(str, Enum):
    FULL = "full"
    PARTIAL = "partial"


@dataclass(frozen=True)
class LiquidationPlan:
    """What the executor should do for one liquidatable position.

    Amounts are Assets (whole tokens). ``expected_profit`` is denominated in
    the debt asset; ``expected_profit_value`` is the same profit in USD.
    """

    position_ref: PositionRef
    debt_to_repay: Decimal
    min_collateral_to_receive: Decimal
    kind: LiquidationKind
    expected_profit: Decimal
    expected_profit_value: Decimal = ZERO
    expected_collateral: Decimal = ZERO
    health_factor: Decimal | None = None
    collateral_price: Decimal = ZERO
    debt_price: Decimal = ZERO
    price_timestamp: int = 0
    position_block: int = 0
    created_at: float = 0.0
    plan_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class LiquidationRecord:
    """Append-only audit entry, created only after on-chain confirmation."""

    liquidator_address: str
    transaction_ref: str
    collateral_seized: Decimal
    debt_repaid: Decimal
    liquidation_bonus: Decimal
    timestamp: float
    position_ref: PositionRef | None = None
    plan_id: str = ""


class ExecutionState(str, Enum):
    PLANNED = "planned"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    SUPERSEDED = "superseded"
    ABORTED = "aborted"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self not in (ExecutionState.PLANNED, ExecutionState.SUBMITTED, ExecutionState.UNKNOWN)


@dataclass(frozen=True)
class ExecutionReceipt:
    """Outcome of a submitted liquidation transaction."""

    transaction_ref: str
    succeeded: bool
    revert_reason: str = ""
    collateral_seized: Decimal = ZERO
    debt_repaid: Decimal = ZERO
    block_number: int = 0
