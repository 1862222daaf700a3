from .events import VesuEventSource
from .liquidator import VesuLiquidationGateway
from .pool import VesuPool

__all__ = ["VesuEventSource", "VesuLiquidationGateway", "VesuPool"]
