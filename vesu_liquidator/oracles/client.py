"""Oracle client: validated, short-lived cached prices with a fallback source."""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable

from cachetools import TTLCache

from ..errors import EngineError, OracleUnavailable, StalePrice
from ..interfaces.price_source import PriceSource
from ..models import PricePoint

logger = logging.getLogger(__name__)

PRICE_CACHE_SIZE = 1024


class OracleClient:
    """Fetches prices from an ordered list of sources.

    Sources are tried in order (primary first); each carries its own minimum
    ``num_sources``. A point is only returned or cached after it passes
    validation, and the cache is re-checked for staleness on every read.
    """

    def __init__(
        self,
        sources: list[tuple[PriceSource, int]],
        staleness_tolerance: int = 300,
        cache: TTLCache | None = None,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not sources:
            raise ValueError("At least one price source is required")
        self._sources = list(sources)
        self.staleness_tolerance = staleness_tolerance
        self._cache: TTLCache = (
            cache if cache is not None else TTLCache(maxsize=PRICE_CACHE_SIZE, ttl=12.0)
        )
        self._timeout = timeout
        self._clock = clock
        self._last_good: dict[str, PricePoint] = {}

    def is_stale(self, point: PricePoint, now: float | None = None) -> bool:
        now = self._clock() if now is None else now
        return now - point.last_updated > self.staleness_tolerance

    def _validate(self, point: PricePoint, min_sources: int) -> None:
        if point.price <= 0:
            raise OracleUnavailable(f"Invalid non-positive price for {point.asset}", asset=point.asset)
        if point.num_sources < min_sources:
            raise OracleUnavailable(
                f"Insufficient price sources for {point.asset}: "
                f"got {point.num_sources}, need {min_sources}",
                asset=point.asset,
            )
        if self.is_stale(point):
            raise StalePrice(
                f"Price for {point.asset} is stale (last updated {point.last_updated}, "
                f"tolerance {self.staleness_tolerance}s)",
                asset=point.asset,
                last_updated=point.last_updated,
            )

    async def get_price(self, asset: str) -> PricePoint:
        """Return a fresh, trusted price or raise ``OracleUnavailable``/``StalePrice``."""
        cached = self._cache.get(asset)
        if cached is not None and not self.is_stale(cached):
            return cached

        errors: list[EngineError] = []
        for source, min_sources in self._sources:
            try:
                point = await asyncio.wait_for(source.fetch_price(asset), self._timeout)
                self._validate(point, min_sources)
            except asyncio.TimeoutError:
                errors.append(OracleUnavailable(f"{source.name} timed out for {asset}"))
                logger.warning("Price source %s timed out for %s", source.name, asset)
                continue
            except EngineError as e:
                errors.append(e)
                logger.warning("Price source %s rejected for %s: %s", source.name, asset, e)
                continue
            except Exception as e:
                errors.append(OracleUnavailable(f"{source.name} failed for {asset}: {e}"))
                logger.warning("Price source %s failed for %s: %s", source.name, asset, e)
                continue

            self._cache[asset] = point
            self._last_good[asset] = point
            return point

        message = "; ".join(str(e) for e in errors)
        if errors and all(isinstance(e, StalePrice) for e in errors):
            raise StalePrice(f"All price sources stale for {asset}: {message}", asset=asset)
        raise OracleUnavailable(f"All price sources failed for {asset}: {message}", asset=asset)

    async def get_prices(self, assets: Iterable[str]) -> dict[str, PricePoint | EngineError]:
        """Batch fetch; failures are returned per asset instead of raised."""
        unique = sorted(set(assets))
        results = await asyncio.gather(
            *(self.get_price(a) for a in unique), return_exceptions=True
        )

        prices: dict[str, PricePoint | EngineError] = {}
        for asset, result in zip(unique, results):
            if isinstance(result, PricePoint):
                prices[asset] = result
            elif isinstance(result, EngineError):
                prices[asset] = result
            elif isinstance(result, Exception):
                prices[asset] = OracleUnavailable(str(result), asset=asset)
            else:
                raise result
        return prices

    def last_good(self, asset: str) -> PricePoint | None:
        """Last validated price, possibly stale. For reporting only, never for liquidation."""
        return self._last_good.get(asset)
