"""Unit tests for the event emitter and sinks."""
from __future__ import annotations

import json
import logging
from decimal import Decimal
from pathlib import Path

import pytest

from vesu_liquidator.events import (
    EngineEvent,
    EventEmitter,
    EventType,
    JsonLinesEventSink,
    LoggingEventSink,
)
from vesu_liquidator.models import Classification, PositionRef


class FailingSink:
    def emit(self, event: EngineEvent) -> None:
        raise OSError("disk full")


class TestEngineEvent:
    def test_to_dict_renders_decimals_and_enums(self, sample_ref: PositionRef) -> None:
        event = EngineEvent(
            type=EventType.HEALTH_REPORT,
            payload={
                "health_factor": Decimal("0.914"),
                "classification": Classification.LIQUIDATABLE,
                "ref": sample_ref,
            },
            timestamp=1.0,
        )
        data = event.to_dict()
        assert data["type"] == "health_report"
        assert data["payload"]["health_factor"] == "0.914"
        assert data["payload"]["classification"] == "liquidatable"
        assert data["payload"]["ref"]["user"] == sample_ref.user


class TestEventEmitter:
    def test_fans_out_to_all_sinks(self, emitter: EventEmitter, recording_sink) -> None:
        second = type(recording_sink)()
        emitter.add_sink(second)

        emitter.emit(EventType.TICK_COMPLETED, tick=1)

        assert len(recording_sink.events) == 1
        assert second.events[0].payload == {"tick": 1}

    def test_failing_sink_is_isolated(
        self, recording_sink, caplog: pytest.LogCaptureFixture
    ) -> None:
        emitter = EventEmitter([FailingSink(), recording_sink])

        with caplog.at_level(logging.ERROR):
            event = emitter.emit(EventType.ENGINE_HALTED, reason="x")

        assert event.type is EventType.ENGINE_HALTED
        assert recording_sink.of_type(EventType.ENGINE_HALTED)
        assert "disk full" in caplog.text


class TestSinks:
    def test_jsonl_sink_appends_lines(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "events.jsonl"
        emitter = EventEmitter([JsonLinesEventSink(path)])

        emitter.emit(EventType.PLAN_CREATED, profit=Decimal("104.5"))
        emitter.emit(EventType.PLAN_REJECTED, reason="unprofitable")

        lines = path.read_text().splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["type"] == "plan_created"
        assert first["payload"]["profit"] == "104.5"

    def test_logging_sink(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="vesu_liquidator.events"):
            LoggingEventSink().emit(EngineEvent(type=EventType.EVENT_QUEUED, payload={"count": 2}))
        assert '"event_queued"' in caplog.text
