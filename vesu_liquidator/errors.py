"""Engine error taxonomy.

Every failure the engine can observe maps onto one of these classes so the
Monitor Loop can decide, by type alone, whether to skip, retry, move on or halt.
"""
from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.details = details


class ValidationError(EngineError):
    """Malformed amount, rate, address or event. Rejected, never retried."""


# ---------------------------------------------------------------------------
# Price errors (recoverable: skip the position this tick)
# ---------------------------------------------------------------------------


class OracleUnavailable(EngineError):
    """Price could not be fetched or was not trustworthy."""


class StalePrice(OracleUnavailable):
    """Price is older than the staleness tolerance."""


# ---------------------------------------------------------------------------
# Business-rule rejections (no plan, not an error state)
# ---------------------------------------------------------------------------


class NoPlan(EngineError):
    """The planner declined to produce a plan."""


class InsufficientLiquidity(NoPlan):
    """Not enough collateral or pool liquidity to cover the liquidation."""


class Unprofitable(NoPlan):
    """Expected profit does not clear the configured minimum."""


# ---------------------------------------------------------------------------
# Execution errors (caught at the executor boundary)
# ---------------------------------------------------------------------------


class ExecutionError(EngineError):
    """Base class for liquidation execution outcomes other than success."""


class Aborted(ExecutionError):
    """Nothing was sent on-chain (estimation failure, stale plan, dry run)."""


class Superseded(ExecutionError):
    """The plan lost a race and no longer applies."""


class AlreadyLiquidated(Superseded):
    """A competitor liquidated the position before our transaction landed."""


class ExecutionFailed(ExecutionError):
    """The transaction reverted for any other reason."""


class ExecutionTimeout(ExecutionError):
    """Submission or confirmation timed out; the outcome is unknown."""


# ---------------------------------------------------------------------------
# Store / system
# ---------------------------------------------------------------------------


class StoreNotReady(EngineError):
    """The position store has not finished its startup replay."""


class FatalError(EngineError):
    """Store corruption or configuration error. The Monitor Loop must halt."""
