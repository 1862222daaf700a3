"""Liquidation gateway protocol: the flash-loan liquidation transaction."""
from decimal import Decimal
from typing import Any, Protocol

from ..models import ExecutionReceipt, LiquidationPlan


class LiquidationGateway(Protocol):
    """Builds, prices, submits and confirms one atomic liquidation transaction."""

    async def estimate_fee(self, plan: LiquidationPlan) -> Decimal: ...

    async def submit(self, plan: LiquidationPlan) -> str: ...

    async def wait_for_receipt(self, transaction_ref: str) -> ExecutionReceipt: ...


class TransactionSigner(Protocol):
    """Signs invoke transactions for the operator account."""

    @property
    def account_address(self) -> str: ...

    async def sign_invoke(
        self, calldata: list[int], nonce: int, query: bool = False
    ) -> dict[str, Any]: ...
