"""Starknet JSON-RPC client with endpoint fallback."""
from __future__ import annotations

import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ...config import ChainConfig
from .codec import selector_hex

logger = logging.getLogger(__name__)


class StarknetClient:
    """Starknet RPC client with automatic endpoint fallback."""

    def __init__(self, config: ChainConfig) -> None:
        self.endpoints = list(config.rpc_endpoints)
        self.timeout = config.rpc_timeout
        self.current_rpc_index = 0

    async def rpc_call(self, method: str, params: dict[str, Any] | list[Any]) -> Any:
        """Make RPC call with fallback to alternative endpoints."""
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}

        ssl_context = ssl.create_default_context(cafile=certifi.where())

        last_error: Exception | None = None
        for attempt in range(len(self.endpoints)):
            rpc_index = (self.current_rpc_index + attempt) % len(self.endpoints)
            rpc_url = self.endpoints[rpc_index]

            try:
                connector = aiohttp.TCPConnector(ssl=ssl_context)
                async with aiohttp.ClientSession(connector=connector) as session:
                    async with session.post(
                        rpc_url,
                        json=payload,
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ) as response:
                        result = await response.json()
                        if "error" in result:
                            raise RuntimeError(f"RPC Error: {result['error']}")

                        if rpc_index != self.current_rpc_index:
                            logger.info("Switched to RPC endpoint: %s", rpc_url)
                            self.current_rpc_index = rpc_index

                        return result.get("result")
            except Exception as e:
                last_error = e
                logger.warning("RPC endpoint %s failed for %s: %s", rpc_url, method, e)
                if attempt < len(self.endpoints) - 1:
                    logger.info("Trying next endpoint...")
                continue

        raise RuntimeError(f"All RPC endpoints failed. Last error: {last_error}")

    async def call(
        self,
        contract_address: str,
        entry_point: str,
        calldata: list[int],
        block_number: int | None = None,
    ) -> list[int]:
        """Call a view entry point (at ``block_number``, default latest) and return the raw felts."""
        result = await self.rpc_call(
            "starknet_call",
            {
                "request": {
                    "contract_address": contract_address,
                    "entry_point_selector": selector_hex(entry_point),
                    "calldata": [hex(x) for x in calldata],
                },
                "block_id": {"block_number": block_number} if block_number is not None else "latest",
            },
        )
        return [int(x, 16) for x in result or []]

    async def block_number(self) -> int:
        return int(await self.rpc_call("starknet_blockNumber", []))

    async def get_events(
        self,
        address: str,
        from_block: int,
        to_block: int,
        keys: list[list[str]] | None = None,
        chunk_size: int = 500,
    ) -> list[dict[str, Any]]:
        """Fetch all events in a block range (follows continuation tokens)."""
        events: list[dict[str, Any]] = []
        continuation: str | None = None

        while True:
            event_filter: dict[str, Any] = {
                "from_block": {"block_number": from_block},
                "to_block": {"block_number": to_block},
                "address": address,
                "chunk_size": chunk_size,
            }
            if keys:
                event_filter["keys"] = keys
            if continuation:
                event_filter["continuation_token"] = continuation

            result = await self.rpc_call("starknet_getEvents", {"filter": event_filter})
            events.extend(result.get("events", []))

            continuation = result.get("continuation_token")
            if not continuation:
                break

        return events

    async def get_nonce(self, account_address: str) -> int:
        result = await self.rpc_call(
            "starknet_getNonce",
            {"block_id": "pending", "contract_address": account_address},
        )
        return int(result, 16)

    async def estimate_fee(self, invoke_tx: dict[str, Any]) -> dict[str, Any]:
        result = await self.rpc_call(
            "starknet_estimateFee",
            {"request": [invoke_tx], "simulation_flags": [], "block_id": "pending"},
        )
        return result[0]

    async def add_invoke_transaction(self, invoke_tx: dict[str, Any]) -> str:
        result = await self.rpc_call(
            "starknet_addInvokeTransaction", {"invoke_transaction": invoke_tx}
        )
        return result["transaction_hash"]

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any]:
        return await self.rpc_call(
            "starknet_getTransactionReceipt", {"transaction_hash": tx_hash}
        )
