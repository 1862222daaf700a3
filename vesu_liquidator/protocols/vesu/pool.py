"""Vesu pool reads: positions and asset configs."""
from __future__ import annotations

import logging
from decimal import Decimal

from ...chains.starknet.codec import to_felt
from ...config import AppConfig
from ...errors import ValidationError
from ...interfaces.chain import ChainClient
from ...models import AssetConfig, PositionRef
from . import parser

logger = logging.getLogger(__name__)


class VesuPool:
    """Read-only view of the configured Vesu pools."""

    def __init__(self, chain_client: ChainClient, config: AppConfig) -> None:
        self._client = chain_client
        self._pool_addresses = {name: pool.address for name, pool in config.pools.items()}
        self._assets = dict(config.assets)

    def pool_address(self, pool_id: str) -> str:
        address = self._pool_addresses.get(pool_id)
        if not address:
            raise ValidationError(f"Unknown pool: {pool_id}")
        return address

    def asset_address(self, symbol: str) -> int:
        info = self._assets.get(symbol)
        if info is None or not info.address:
            raise ValidationError(f"Unknown asset: {symbol}")
        return to_felt(info.address)

    def decimals(self, symbol: str) -> int:
        info = self._assets.get(symbol)
        return info.decimals if info else 18

    async def position(
        self, ref: PositionRef, block_number: int | None = None
    ) -> tuple[Decimal, Decimal]:
        raw = await self._client.call(
            self.pool_address(ref.pool_id),
            "position",
            [
                self.asset_address(ref.collateral_asset),
                self.asset_address(ref.debt_asset),
                to_felt(ref.user),
            ],
            block_number=block_number,
        )
        return parser.parse_position(raw, self.decimals(ref.debt_asset))

    async def asset_config(self, pool_id: str, asset: str) -> AssetConfig:
        raw = await self._client.call(
            self.pool_address(pool_id), "asset_config", [self.asset_address(asset)]
        )
        config = parser.parse_asset_config(raw)
        logger.debug(
            "Asset config %s/%s: accumulator %s, utilization %s",
            pool_id, asset, config.last_rate_accumulator, config.utilization,
        )
        return config
