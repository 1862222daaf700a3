"""Starknet JSON-RPC client and operator account signer."""
from .client import StarknetClient
from .signer import StarkAccountSigner, build_signer

__all__ = ["StarknetClient", "StarkAccountSigner", "build_signer"]
