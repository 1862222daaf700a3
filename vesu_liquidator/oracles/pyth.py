"""Pyth Network price oracle (Hermes), used as the fallback source."""
from __future__ import annotations

import logging
import ssl
from decimal import Decimal

import aiohttp
import certifi

from ..config import PythConfig
from ..errors import OracleUnavailable
from ..models import PricePoint

logger = logging.getLogger(__name__)

# Hermes does not report how many publishers fed an aggregate.
_REPORTED_SOURCES = 1


class PythSource:
    """Fetch prices from Pyth Network oracle."""

    def __init__(self, config: PythConfig, timeout: float = 10.0) -> None:
        self.hermes_url = config.hermes_url
        self.price_feeds = dict(config.feeds)
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "pyth"

    async def fetch_price(self, asset: str) -> PricePoint:
        prices = await self.fetch_prices([asset])
        if asset not in prices:
            raise OracleUnavailable(f"Pyth returned no price for {asset}", asset=asset)
        return prices[asset]

    async def fetch_prices(self, symbols: list[str] | None = None) -> dict[str, PricePoint]:
        """Fetch current prices from Pyth Network.

        Args:
            symbols: Optional list of symbols to fetch. If None, fetches all
                     configured feeds.

        Raises:
            OracleUnavailable: on HTTP or transport failure.
        """
        prices: dict[str, PricePoint] = {}

        feeds = self.price_feeds
        if symbols is not None:
            feeds = {k: v for k, v in self.price_feeds.items() if k in symbols}

        feed_ids = list(set(feeds.values()))
        if not feed_ids:
            return prices

        query_params = "&".join([f"ids[]={fid}" for fid in feed_ids])
        url = f"{self.hermes_url}?{query_params}"

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.get(
                    url, timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status != 200:
                        raise OracleUnavailable(
                            f"Error fetching prices from Pyth: HTTP {response.status}"
                        )
                    data = await response.json()
        except OracleUnavailable:
            raise
        except Exception as e:
            raise OracleUnavailable(f"Error fetching prices from Pyth: {e}") from e

        # Reverse mapping from feed ID to asset names
        id_to_assets: dict[str, list[str]] = {}
        for asset, feed_id in feeds.items():
            id_to_assets.setdefault(feed_id.lower().removeprefix("0x"), []).append(asset)

        for item in data.get("parsed", []):
            feed_id = str(item.get("id", "")).lower().removeprefix("0x")
            price_data = item.get("price", {})
            price_raw = int(price_data.get("price", 0))
            expo = int(price_data.get("expo", 0))
            publish_time = int(price_data.get("publish_time", 0))

            for asset in id_to_assets.get(feed_id, []):
                prices[asset] = PricePoint(
                    asset=asset,
                    price=Decimal(price_raw).scaleb(expo),
                    decimals=-expo,
                    last_updated=publish_time,
                    num_sources=_REPORTED_SOURCES,
                    source="pyth",
                )

        for asset, point in sorted(prices.items()):
            logger.debug("Pyth %s: $%s", asset, point.price)

        return prices
