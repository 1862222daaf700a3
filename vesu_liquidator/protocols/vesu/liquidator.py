"""Flash-loan liquidation gateway for Vesu.

A single invoke to the operator's liquidator contract, which within one
transaction flash-borrows the debt asset, calls the pool's
``liquidate_position``, swaps the seized collateral back with a floor and
repays the flash loan. Any failed step reverts the whole transaction.
"""
from __future__ import annotations

import asyncio
import logging
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Any

from ...chains.starknet.codec import from_raw, get_selector_from_name, to_felt, to_raw, to_u256
from ...config import AppConfig
from ...errors import ValidationError
from ...interfaces.chain import ChainClient
from ...interfaces.liquidation import TransactionSigner
from ...models import ExecutionReceipt, LiquidationPlan
from . import parser

logger = logging.getLogger(__name__)

LIQUIDATE_ENTRY_POINT = "liquidate"

_ACCEPTED = ("ACCEPTED_ON_L2", "ACCEPTED_ON_L1")


class VesuLiquidationGateway:
    def __init__(
        self,
        chain_client: ChainClient,
        signer: TransactionSigner,
        config: AppConfig,
        poll_interval: float = 2.0,
    ) -> None:
        self._client = chain_client
        self._signer = signer
        self._config = config
        self._liq = config.liquidation
        self._poll_interval = poll_interval
        if not self._liq.liquidator_contract:
            raise ValidationError("liquidation.liquidator_contract is not configured")

    def _asset(self, symbol: str) -> tuple[int, int]:
        info = self._config.assets.get(symbol)
        if info is None or not info.address:
            raise ValidationError(f"Unknown asset: {symbol}")
        return to_felt(info.address), info.decimals

    def build_calldata(self, plan: LiquidationPlan) -> list[int]:
        """Account ``__execute__`` calldata: one call to the liquidator contract."""
        ref = plan.position_ref
        pool = self._config.pools.get(ref.pool_id)
        if pool is None:
            raise ValidationError(f"Unknown pool: {ref.pool_id}")
        collateral_address, collateral_decimals = self._asset(ref.collateral_asset)
        debt_address, debt_decimals = self._asset(ref.debt_asset)

        debt_to_repay = to_raw(plan.debt_to_repay, debt_decimals, ROUND_CEILING)
        min_collateral = to_raw(plan.min_collateral_to_receive, collateral_decimals, ROUND_FLOOR)
        # The swap must return at least enough to repay the loan plus its fee.
        min_debt_out = to_raw(
            plan.debt_to_repay * (1 + self._liq.flash_loan_fee_rate), debt_decimals, ROUND_CEILING
        )

        args = [
            to_felt(pool.address),
            collateral_address,
            debt_address,
            to_felt(ref.user),
            *to_u256(debt_to_repay),
            *to_u256(min_collateral),
            to_felt(self._liq.swap_router) if self._liq.swap_router else 0,
            *to_u256(min_debt_out),
        ]
        return [
            1,
            to_felt(self._liq.liquidator_contract),
            get_selector_from_name(LIQUIDATE_ENTRY_POINT),
            len(args),
            *args,
        ]

    async def _signed(self, plan: LiquidationPlan, query: bool) -> dict[str, Any]:
        nonce = await self._client.get_nonce(self._signer.account_address)
        return await self._signer.sign_invoke(self.build_calldata(plan), nonce, query=query)

    async def estimate_fee(self, plan: LiquidationPlan) -> Decimal:
        """Estimated network fee in fee-token units."""
        invoke = await self._signed(plan, query=True)
        estimate = await self._client.estimate_fee(invoke)
        overall = estimate.get("overall_fee")
        if overall is None:
            raise ValidationError(f"Fee estimate without overall_fee: {estimate}")
        fee_info = self._config.assets.get(self._liq.fee_token)
        raw_fee = int(overall, 16) if isinstance(overall, str) else int(overall)
        return from_raw(raw_fee, fee_info.decimals if fee_info else 18)

    async def submit(self, plan: LiquidationPlan) -> str:
        invoke = await self._signed(plan, query=False)
        tx_hash = await self._client.add_invoke_transaction(invoke)
        logger.info("Liquidation tx %s sent for %s", tx_hash, plan.position_ref)
        return tx_hash

    async def wait_for_receipt(self, transaction_ref: str) -> ExecutionReceipt:
        """Poll until the transaction is accepted; the caller bounds the wait."""
        while True:
            try:
                receipt = await self._client.get_transaction_receipt(transaction_ref)
            except Exception as e:
                if "not found" not in str(e).lower():
                    logger.warning("Receipt poll for %s failed: %s", transaction_ref, e)
                receipt = None

            if receipt and receipt.get("finality_status") in _ACCEPTED:
                return self.parse_receipt(transaction_ref, receipt)
            await asyncio.sleep(self._poll_interval)

    def parse_receipt(self, transaction_ref: str, receipt: dict[str, Any]) -> ExecutionReceipt:
        succeeded = receipt.get("execution_status") == "SUCCEEDED"
        if not succeeded:
            return ExecutionReceipt(
                transaction_ref=transaction_ref,
                succeeded=False,
                revert_reason=receipt.get("revert_reason", ""),
                block_number=int(receipt.get("block_number", 0) or 0),
            )

        seized = repaid = Decimal(0)
        pool = self._pool_for_receipt(receipt)
        if pool is not None:
            pool_address, collateral_decimals, debt_decimals = pool
            seized, repaid = parser.parse_liquidation_amounts(
                receipt.get("events", []), pool_address, collateral_decimals, debt_decimals
            )
        return ExecutionReceipt(
            transaction_ref=transaction_ref,
            succeeded=True,
            collateral_seized=seized,
            debt_repaid=repaid,
            block_number=int(receipt.get("block_number", 0) or 0),
        )

    def _pool_for_receipt(self, receipt: dict[str, Any]) -> tuple[str, int, int] | None:
        """Find the configured pool and pair that emitted the receipt's liquidation event."""
        symbols = parser.symbol_map(self._config.assets)
        pools = {to_felt(p.address) for p in self._config.pools.values() if p.address}
        for event in receipt.get("events", []):
            if to_felt(event.get("from_address", "0x0")) not in pools:
                continue
            keys = [int(k, 16) if isinstance(k, str) else int(k) for k in event.get("keys", [])]
            if len(keys) < 3 or keys[0] != parser.LIQUIDATE_POSITION:
                continue
            collateral, debt = symbols.get(keys[1]), symbols.get(keys[2])
            if collateral is None or debt is None:
                continue
            return (
                event.get("from_address", "0x0"),
                self._config.assets[collateral].decimals,
                self._config.assets[debt].decimals,
            )
        return None
