"""Pragma on-chain oracle: median spot price per pair."""
from __future__ import annotations

import logging

from ..chains.starknet.codec import encode_short_string, from_raw
from ..config import PragmaConfig
from ..errors import OracleUnavailable
from ..interfaces.chain import ChainClient
from ..models import PricePoint

logger = logging.getLogger(__name__)

# DataType::SpotEntry variant index in the oracle ABI
_SPOT_ENTRY = 0


def parse_median_response(asset: str, raw: list[int]) -> PricePoint:
    """Decode ``get_data_median`` output.

    Layout: (price: u128, decimals: u32, last_updated_timestamp: u64,
    num_sources_aggregated: u32, expiration_timestamp: Option<u64>).
    """
    if len(raw) < 4:
        raise OracleUnavailable(f"Malformed Pragma response for {asset}: {raw}", asset=asset)
    price_raw, decimals, last_updated, num_sources = raw[:4]
    return PricePoint(
        asset=asset,
        price=from_raw(price_raw, decimals),
        decimals=int(decimals),
        last_updated=int(last_updated),
        num_sources=int(num_sources),
        source="pragma",
    )


class PragmaSource:
    """Reads median prices from the Pragma oracle contract."""

    def __init__(self, chain_client: ChainClient, config: PragmaConfig) -> None:
        self._client = chain_client
        self._address = config.address
        self._pair_ids = dict(config.pair_ids)

    @property
    def name(self) -> str:
        return "pragma"

    async def fetch_price(self, asset: str) -> PricePoint:
        pair_id = self._pair_ids.get(asset)
        if not pair_id:
            raise OracleUnavailable(f"No Pragma pair configured for {asset}", asset=asset)

        try:
            raw = await self._client.call(
                self._address,
                "get_data_median",
                [_SPOT_ENTRY, encode_short_string(pair_id)],
            )
        except Exception as e:
            raise OracleUnavailable(f"Pragma call failed for {asset}: {e}", asset=asset) from e

        point = parse_median_response(asset, raw)
        logger.debug("Pragma %s: %s (%d sources)", asset, point.price, point.num_sources)
        return point
