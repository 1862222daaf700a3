"""Chain client protocol: blockchain RPC abstraction."""
from typing import Any, Protocol


class ChainClient(Protocol):
    """Abstract interface for blockchain RPC interactions."""

    async def call(
        self,
        contract_address: str,
        entry_point: str,
        calldata: list[int],
        block_number: int | None = None,
    ) -> list[int]: ...

    async def block_number(self) -> int: ...

    async def get_events(
        self,
        address: str,
        from_block: int,
        to_block: int,
        keys: list[list[str]] | None = None,
        chunk_size: int = 500,
    ) -> list[dict[str, Any]]: ...

    async def get_nonce(self, account_address: str) -> int: ...

    async def estimate_fee(self, invoke_tx: dict[str, Any]) -> dict[str, Any]: ...

    async def add_invoke_transaction(self, invoke_tx: dict[str, Any]) -> str: ...

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any]: ...
