"""Event source protocol: ordered position-modifying chain events."""
from typing import Protocol

from ..models import ChainEvent


class EventSource(Protocol):
    """Yields position events in chain order and supports replay from any block."""

    async def head_block(self) -> int: ...

    async def fetch(self, from_block: int, to_block: int) -> list[ChainEvent]: ...
