from .checkpoint import load_checkpoint, save_checkpoint
from .position_store import ApplyResult, PositionStore, StoreSnapshot, StoreState

__all__ = [
    "ApplyResult",
    "PositionStore",
    "StoreSnapshot",
    "StoreState",
    "load_checkpoint",
    "save_checkpoint",
]
