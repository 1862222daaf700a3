"""Price oracle sources and the validating client in front of them."""
from .client import OracleClient
from .pragma import PragmaSource
from .pyth import PythSource

__all__ = ["OracleClient", "PragmaSource", "PythSource"]
