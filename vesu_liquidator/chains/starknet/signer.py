"""Operator account signer for V3 invoke transactions.

Signing is delegated to starknet-py's Stark curve signer; this module only
shapes the signed transaction into the JSON-RPC ``INVOKE_TXN_V3`` object that
``StarknetClient`` sends. Fee-estimation requests are signed with the query
version and zero resource bounds so they can never be broadcast.
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Any

from starknet_py.net.client_models import ResourceBounds, ResourceBoundsMapping
from starknet_py.net.models.transaction import InvokeV3
from starknet_py.net.signer.stark_curve_signer import KeyPair, StarkCurveSigner

from ...config import AppConfig, ResourceBound, SignerConfig
from ...errors import ValidationError
from .codec import encode_short_string, to_felt

logger = logging.getLogger(__name__)

INVOKE_VERSION = 3
QUERY_VERSION_BASE = 2**128


def _bounds(config: SignerConfig) -> ResourceBoundsMapping:
    def one(bound: ResourceBound) -> ResourceBounds:
        return ResourceBounds(max_amount=bound.max_amount, max_price_per_unit=bound.max_price_per_unit)

    return ResourceBoundsMapping(
        l1_gas=one(config.l1_gas),
        l2_gas=one(config.l2_gas),
        l1_data_gas=one(config.l1_data_gas),
    )


def _bound_json(bound: ResourceBounds) -> dict[str, str]:
    return {"max_amount": hex(bound.max_amount), "max_price_per_unit": hex(bound.max_price_per_unit)}


class StarkAccountSigner:
    """Signs invokes for one account with a private key held in memory."""

    def __init__(self, account_address: str, private_key: str, config: SignerConfig) -> None:
        try:
            address = to_felt(account_address)
            key = to_felt(private_key)
        except ValueError as e:
            raise ValidationError(f"Invalid signer key or account address: {e}") from None
        if key == 0:
            raise ValidationError("Signer private key must be non-zero")
        try:
            chain_id = encode_short_string(config.chain_id)
        except (UnicodeEncodeError, ValueError) as e:
            raise ValidationError(f"Invalid chain id {config.chain_id!r}: {e}") from None

        self._address = address
        self._resource_bounds = _bounds(config)
        self._signer = StarkCurveSigner(
            account_address=address,
            key_pair=KeyPair.from_private_key(key),
            chain_id=chain_id,
        )

    @property
    def account_address(self) -> str:
        return hex(self._address)

    @property
    def public_key(self) -> int:
        return self._signer.public_key

    def build_invoke(self, calldata: list[int], nonce: int, query: bool = False) -> InvokeV3:
        """Signed ``InvokeV3``; query transactions carry zero resource bounds."""
        unsigned = InvokeV3(
            version=INVOKE_VERSION + QUERY_VERSION_BASE if query else INVOKE_VERSION,
            signature=[],
            nonce=nonce,
            resource_bounds=ResourceBoundsMapping.init_with_zeros() if query else self._resource_bounds,
            calldata=list(calldata),
            sender_address=self._address,
        )
        return dataclasses.replace(unsigned, signature=list(self._signer.sign_transaction(unsigned)))

    async def sign_invoke(
        self, calldata: list[int], nonce: int, query: bool = False
    ) -> dict[str, Any]:
        tx = self.build_invoke(calldata, nonce, query=query)
        bounds = tx.resource_bounds
        return {
            "type": "INVOKE",
            "version": hex(tx.version),
            "sender_address": hex(tx.sender_address),
            "calldata": [hex(v) for v in tx.calldata],
            "signature": [hex(v) for v in tx.signature],
            "nonce": hex(tx.nonce),
            "resource_bounds": {
                "l1_gas": _bound_json(bounds.l1_gas),
                "l2_gas": _bound_json(bounds.l2_gas),
                "l1_data_gas": _bound_json(bounds.l1_data_gas),
            },
            "tip": "0x0",
            "paymaster_data": [],
            "account_deployment_data": [],
            "nonce_data_availability_mode": "L1",
            "fee_data_availability_mode": "L1",
        }


def build_signer(config: AppConfig) -> StarkAccountSigner | None:
    """Signer for the configured operator account, or None when no key is set."""
    key = config.signer.private_key
    if not key:
        logger.info("No signer private key configured; liquidations will not be submitted")
        return None
    signer = StarkAccountSigner(config.liquidation.liquidator_address, key, config.signer)
    logger.info("Signing as %s on %s", signer.account_address, config.signer.chain_id)
    return signer
