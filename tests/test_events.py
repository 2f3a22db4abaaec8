"""Tests for the event bus and the logging observer."""

import asyncio
import dataclasses
import logging

import pytest

from agent_engine.core.events import Event, EventBus, EventKind
from agent_engine.observers import EventLogger


class TestEventBus:
    def test_seq_is_per_session(self, bus):
        events = bus.subscribe()
        bus.emit(EventKind.TURN_STARTED, "s1", turn_id="t1")
        bus.emit(EventKind.TURN_STARTED, "s2", turn_id="t2")
        bus.emit(EventKind.ASSISTANT_DELTA, "s1", turn_id="t1", text="hi")
        seqs = [(e.session_id, e.seq) for e in iter(events.get_nowait, None)]
        assert seqs == [("s1", 1), ("s2", 1), ("s1", 2)]

    def test_every_subscriber_gets_every_event(self, bus):
        first, second = bus.subscribe(), bus.subscribe()
        bus.emit(EventKind.TURN_STARTED, "s1")
        assert first.get_nowait().kind is EventKind.TURN_STARTED
        assert second.get_nowait().kind is EventKind.TURN_STARTED

    def test_session_filter(self, bus):
        events = bus.subscribe(session_id="s2")
        bus.emit(EventKind.TURN_STARTED, "s1")
        bus.emit(EventKind.TURN_STARTED, "s2")
        assert events.get_nowait().session_id == "s2"
        assert events.get_nowait() is None

    def test_full_queue_drops_oldest(self):
        bus = EventBus(queue_size=2)
        events = bus.subscribe()
        for i in range(5):
            bus.emit(EventKind.ASSISTANT_DELTA, "s1", text=str(i))
        assert events.dropped == 3
        remaining = [e.payload["text"] for e in iter(events.get_nowait, None)]
        assert remaining == ["3", "4"]

    def test_slow_subscriber_does_not_affect_others(self):
        bus = EventBus()
        slow = bus.subscribe(maxsize=1)
        fast = bus.subscribe()
        for _ in range(3):
            bus.emit(EventKind.ASSISTANT_DELTA, "s1")
        assert slow.dropped == 2
        assert fast.dropped == 0
        assert fast.pending() == 3

    def test_terminal_event_seals_turn(self, bus):
        events = bus.subscribe()
        bus.emit(EventKind.TURN_FINISHED, "s1", turn_id="t1")
        assert bus.is_sealed("t1")
        assert bus.emit(EventKind.TOOL_CALL_FINISHED, "s1", turn_id="t1") is None
        assert [e.kind for e in iter(events.get_nowait, None)] == [EventKind.TURN_FINISHED]

    def test_events_are_immutable(self, bus):
        stamped = bus.emit(EventKind.TURN_STARTED, "s1")
        assert isinstance(stamped, Event)
        with pytest.raises(dataclasses.FrozenInstanceError):
            stamped.seq = 99

    async def test_async_iteration_ends_on_close(self, bus):
        events = bus.subscribe()
        bus.emit(EventKind.TURN_STARTED, "s1")
        events.close()
        received = [e async for e in events]
        assert len(received) == 1
        assert bus.subscriber_count == 0

    async def test_get_waits_for_publish(self, bus):
        events = bus.subscribe()
        getter = asyncio.create_task(events.get())
        await asyncio.sleep(0)
        bus.emit(EventKind.TURN_STARTED, "s1")
        assert (await getter).kind is EventKind.TURN_STARTED


class TestEventLogger:
    async def test_logs_events(self, bus, caplog):
        observer = EventLogger(bus, logger=logging.getLogger("test.events"))
        with caplog.at_level(logging.DEBUG, logger="test.events"):
            bus.emit(EventKind.TURN_STARTED, "s1", turn_id="t1", input="hi")
            bus.emit(EventKind.ASSISTANT_DELTA, "s1", turn_id="t1", text="x")
            observer.drain()
        levels = {r.levelno for r in caplog.records}
        assert logging.INFO in levels
        assert logging.DEBUG in levels
        assert any("turn-started" in r.getMessage() for r in caplog.records)
        await observer.stop()

    async def test_gap_detection(self, bus):
        observer = EventLogger(bus)
        observer.handle(Event(EventKind.TURN_STARTED, "s1", seq=1))
        observer.handle(Event(EventKind.TURN_FINISHED, "s1", seq=4))
        assert observer.gaps == 1
        await observer.stop()
