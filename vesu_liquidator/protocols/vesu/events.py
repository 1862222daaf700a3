"""Vesu pool event source: ModifyPosition / LiquidatePosition in chain order."""
from __future__ import annotations

import logging

from ...chains.starknet.codec import selector_hex
from ...config import AppConfig
from ...errors import ValidationError
from ...interfaces.chain import ChainClient
from ...models import ChainEvent
from . import parser

logger = logging.getLogger(__name__)

_POSITION_EVENT_KEYS = [[selector_hex("ModifyPosition"), selector_hex("LiquidatePosition")]]


class VesuEventSource:
    """Polls ``starknet_getEvents`` for every configured pool; replayable from any block."""

    def __init__(self, chain_client: ChainClient, config: AppConfig) -> None:
        self._client = chain_client
        self._pools = {name: pool.address for name, pool in config.pools.items()}
        self._symbols = parser.symbol_map(config.assets)
        self._decimals = {symbol: info.decimals for symbol, info in config.assets.items()}
        self._chunk_size = config.chain.event_chunk_size

    async def head_block(self) -> int:
        return await self._client.block_number()

    async def fetch(self, from_block: int, to_block: int) -> list[ChainEvent]:
        """Events in ``[from_block, to_block]`` for all pools, sorted by (block, tx, event)."""
        events: list[ChainEvent] = []
        for pool_id, address in self._pools.items():
            raw_events = await self._client.get_events(
                address, from_block, to_block, keys=_POSITION_EVENT_KEYS, chunk_size=self._chunk_size
            )
            for raw, tx_index, event_index in parser.assign_indices(raw_events):
                try:
                    event = parser.parse_event(
                        raw, pool_id, self._symbols, self._decimals, tx_index, event_index
                    )
                except ValidationError as e:
                    logger.error("Rejected malformed event from pool %s: %s", pool_id, e)
                    continue
                if event is not None:
                    events.append(event)

        events.sort(key=lambda e: e.order_key)
        if events:
            logger.debug("Fetched %d position events in blocks %d-%d", len(events), from_block, to_block)
        return events
