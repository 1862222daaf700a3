"""Protocol interfaces for the engine's external collaborators."""
from .chain import ChainClient
from .event_sink import EventSink
from .event_source import EventSource
from .liquidation import LiquidationGateway, TransactionSigner
from .pool import PoolReader
from .price_source import PriceSource

__all__ = [
    "ChainClient",
    "EventSink",
    "EventSource",
    "LiquidationGateway",
    "PoolReader",
    "PriceSource",
    "TransactionSigner",
]
