"""Tests for termsessions.session.wire (Wire, WireEvent, EventType)."""

from __future__ import annotations

import asyncio

from termsessions.session.wire import EventType, Wire, WireEvent


# ---------------------------------------------------------------------------
# EventType
# ---------------------------------------------------------------------------


class TestEventType:
    def test_all_variants_exist(self) -> None:
        expected = {
            "session:created",
            "session:output",
            "session:exit",
            "session:input",
            "session:signal",
            "command:start",
            "command:finished",
        }
        assert {e.value for e in EventType} == expected

    def test_lookup_by_value(self) -> None:
        assert EventType("session:output") is EventType.SESSION_OUTPUT


# ---------------------------------------------------------------------------
# WireEvent
# ---------------------------------------------------------------------------


class TestWireEvent:
    def test_defaults(self) -> None:
        event = WireEvent(type=EventType.SESSION_CREATED)
        assert event.data == {}
        assert event.session_id is None

    def test_with_data(self) -> None:
        event = WireEvent(
            type=EventType.SESSION_OUTPUT, data={"chunk": "hi"}, session_id="s1"
        )
        assert event.data["chunk"] == "hi"
        assert event.session_id == "s1"


# ---------------------------------------------------------------------------
# Wire — basic send/subscribe
# ---------------------------------------------------------------------------


class TestWire:
    def test_send_to_subscriber(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send(WireEvent(type=EventType.SESSION_OUTPUT, data={"chunk": "hi"}))
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.SESSION_OUTPUT
        assert event.data["chunk"] == "hi"

    def test_send_to_multiple_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.send(WireEvent(type=EventType.SESSION_EXIT, data={"exitCode": 0}))
        e1 = q1.get_nowait()
        e2 = q2.get_nowait()
        assert e1 is not None and e2 is not None
        assert e1.type == e2.type == EventType.SESSION_EXIT

    def test_unsubscribe(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.unsubscribe(q)
        wire.send(WireEvent(type=EventType.SESSION_CREATED))
        assert q.empty()

    def test_unsubscribe_nonexistent_is_safe(self) -> None:
        wire = Wire()
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        wire.unsubscribe(q)  # Should not raise

    def test_order_preserved(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        for i in range(5):
            wire.send(WireEvent(type=EventType.SESSION_OUTPUT, data={"n": i}))
        assert [q.get_nowait().data["n"] for _ in range(5)] == [0, 1, 2, 3, 4]


# ---------------------------------------------------------------------------
# Wire — emit
# ---------------------------------------------------------------------------


class TestWireEmit:
    def test_tagged_event_carries_session_id(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.emit(EventType.COMMAND_START, "s1", command="ls")
        event = q.get_nowait()
        assert event.session_id == "s1"
        assert event.data == {"sessionId": "s1", "command": "ls"}

    def test_global_event(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.emit(EventType.SESSION_CREATED, info={"id": "s1"})
        event = q.get_nowait()
        assert event.session_id is None
        assert event.data == {"info": {"id": "s1"}}


# ---------------------------------------------------------------------------
# Wire — closed-state guard
# ---------------------------------------------------------------------------


class TestWireClosedGuard:
    def test_send_after_close_is_dropped(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        # Drain the None sentinel from close()
        assert q.get_nowait() is None
        wire.send(WireEvent(type=EventType.SESSION_OUTPUT, data={"chunk": "too late"}))
        assert q.empty()

    def test_close_sends_sentinel_to_all_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        q3 = wire.subscribe()
        wire.close()
        assert q1.get_nowait() is None
        assert q2.get_nowait() is None
        assert q3.get_nowait() is None
        assert wire.closed

    def test_close_idempotent(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        wire.close()
        assert q.get_nowait() is None
        assert q.empty()
