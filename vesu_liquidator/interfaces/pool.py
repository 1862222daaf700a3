"""Pool reader protocol: read calls against the lending pool contract."""
from decimal import Decimal
from typing import Protocol

from ..models import AssetConfig, PositionRef


class PoolReader(Protocol):
    """Read-only view of a lending pool; eventually consistent with the event stream."""

    async def position(
        self, ref: PositionRef, block_number: int | None = None
    ) -> tuple[Decimal, Decimal]: ...

    async def asset_config(self, pool_id: str, asset: str) -> AssetConfig: ...
