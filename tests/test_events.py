"""Tests for the event bus and JSONL event log."""

from __future__ import annotations

import asyncio
import json

import pytest

from realm.events.bus import Event, EventBus, EventLogWriter
from realm.events.types import CYCLE_STARTED, RUN_COMPLETED, RUN_STARTED


class TestEvent:
    def test_timestamp_defaults(self):
        event = Event(event_type=RUN_STARTED, run_id="r1")
        assert event.timestamp
        assert event.data == {}

    def test_explicit_timestamp_kept(self):
        event = Event(event_type=RUN_STARTED, run_id="r1", timestamp="2026-10-18T00:00:00")
        assert event.timestamp == "2026-10-18T00:00:00"


class TestEventBus:
    def test_subscribe_by_type(self):
        bus = EventBus()
        received = []
        bus.subscribe(RUN_STARTED, received.append)

        bus.emit(Event(RUN_STARTED, "r1"))
        bus.emit(Event(CYCLE_STARTED, "r1"))

        assert [e.event_type for e in received] == [RUN_STARTED]

    def test_subscribe_all(self):
        bus = EventBus()
        received = []
        bus.subscribe_all(received.append)

        bus.emit(Event(RUN_STARTED, "r1"))
        bus.emit(Event(RUN_COMPLETED, "r1"))

        assert len(received) == 2

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        bus.subscribe(RUN_STARTED, received.append)
        bus.unsubscribe(RUN_STARTED, received.append)
        bus.unsubscribe(RUN_STARTED, received.append)

        bus.emit(Event(RUN_STARTED, "r1"))
        assert received == []

    def test_failing_handler_does_not_stop_others(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("handler bug")

        bus.subscribe_all(broken)
        bus.subscribe_all(received.append)
        bus.emit(Event(RUN_STARTED, "r1"))

        assert len(received) == 1

    def test_history_is_bounded(self):
        bus = EventBus(max_history=3)
        for i in range(5):
            bus.emit(Event(CYCLE_STARTED, "r1", {"iteration": i}))
        assert [e.data["iteration"] for e in bus.recent_events()] == [2, 3, 4]
        assert len(bus.events_of_type(CYCLE_STARTED)) == 3

    @pytest.mark.asyncio
    async def test_async_handler_and_drain(self):
        bus = EventBus()
        received = []

        async def handler(event):
            await asyncio.sleep(0)
            received.append(event.event_type)

        bus.subscribe_all(handler)
        bus.emit(Event(RUN_STARTED, "r1"))
        await bus.drain(timeout=1.0)

        assert received == [RUN_STARTED]

    def test_async_handler_without_loop_is_skipped(self):
        bus = EventBus()

        async def handler(event):
            raise AssertionError("should not run")

        bus.subscribe_all(handler)
        bus.emit(Event(RUN_STARTED, "r1"))


class TestEventLogWriter:
    def test_appends_jsonl(self, tmp_path):
        path = tmp_path / "logs" / "analyst-r1.jsonl"
        bus = EventBus()
        EventLogWriter(path).attach(bus)

        bus.emit(Event(RUN_STARTED, "r1", {"role": "analyst"}))
        bus.emit(Event(RUN_COMPLETED, "r1", {"summary": "µ ok"}))

        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["event_type"] == RUN_STARTED
        assert first["data"] == {"role": "analyst"}
        assert json.loads(lines[1])["data"]["summary"] == "µ ok"

    def test_write_failure_is_logged_not_raised(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        writer = EventLogWriter(blocker / "events.jsonl")
        writer.handle(Event(RUN_STARTED, "r1"))
