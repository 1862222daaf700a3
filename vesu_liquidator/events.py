"""Structured engine events and the sinks that receive them."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field, is_dataclass
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

from .interfaces.event_sink import EventSink

logger = logging.getLogger(__name__)

_event_logger = logging.getLogger("vesu_liquidator.events")


class EventType(str, Enum):
    HEALTH_REPORT = "health_report"
    HEALTH_TRANSITION = "health_transition"
    POSITION_SKIPPED = "position_skipped"
    PLAN_CREATED = "plan_created"
    PLAN_REJECTED = "plan_rejected"
    PLAN_DISCARDED = "plan_discarded"
    EXECUTION_STATE = "execution_state"
    LIQUIDATION_RECORDED = "liquidation_recorded"
    EVENT_QUEUED = "event_queued"
    POSITION_RECONCILED = "position_reconciled"
    TICK_COMPLETED = "tick_completed"
    ENGINE_HALTED = "engine_halted"


@dataclass(frozen=True)
class EngineEvent:
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "timestamp": self.timestamp,
            "payload": _jsonable(self.payload),
        }


def _jsonable(value: Any) -> Any:
    """Render Decimals, enums and dataclasses into JSON-friendly values."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return _jsonable(asdict(value))
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return value


class LoggingEventSink:
    """Writes each event as one JSON line on the ``vesu_liquidator.events`` logger."""

    def emit(self, event: EngineEvent) -> None:
        _event_logger.info(json.dumps(event.to_dict(), sort_keys=True))


class JsonLinesEventSink:
    """Appends events to a JSON-lines file for the reporting surface."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, event: EngineEvent) -> None:
        with open(self.path, "a") as f:
            f.write(json.dumps(event.to_dict(), sort_keys=True) + "\n")


class EventEmitter:
    """Fans events out to every registered sink; a failing sink never stops the engine."""

    def __init__(self, sinks: list[EventSink] | None = None) -> None:
        self._sinks: list[EventSink] = list(sinks or [])

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def emit(self, event_type: EventType, **payload: Any) -> EngineEvent:
        event = EngineEvent(type=event_type, payload=payload)
        for sink in self._sinks:
            try:
                sink.emit(event)
            except Exception as e:
                logger.error("Event sink failed for %s: %s", event_type.value, e)
        return event
