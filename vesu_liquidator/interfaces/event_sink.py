"""Event sink protocol: where structured engine events are delivered."""
from typing import Any, Protocol


class EventSink(Protocol):
    """Receives every structured event the engine emits."""

    def emit(self, event: Any) -> None: ...
