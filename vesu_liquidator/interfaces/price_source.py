"""Price source protocol: a single oracle backend."""
from typing import Protocol

from ..models import PricePoint


class PriceSource(Protocol):
    """Abstract interface for fetching one asset's price."""

    @property
    def name(self) -> str: ...

    async def fetch_price(self, asset: str) -> PricePoint: ...
