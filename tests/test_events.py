"""Tests for myterm.session.events (EventBus, event types, describe)."""

from __future__ import annotations

import asyncio

import pytest

from myterm.session.events import (
    EventBus,
    LifecycleEvent,
    LifecycleKind,
    OutputChunk,
    SessionEvent,
    Stream,
    describe,
)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


class TestEventTypes:
    def test_lifecycle_kinds(self) -> None:
        expected = {"STARTED", "FINISHED", "START_FAILED", "RUNTIME_ERROR"}
        assert {k.name for k in LifecycleKind} == expected

    def test_values_are_lowercase(self) -> None:
        for k in LifecycleKind:
            assert k.value == k.name.lower()
        for s in Stream:
            assert s.value == s.name.lower()

    def test_chunk_defaults(self) -> None:
        chunk = OutputChunk(stream=Stream.STDOUT, text="hi")
        assert chunk.seq == 0

    def test_events_are_frozen(self) -> None:
        chunk = OutputChunk(stream=Stream.STDOUT, text="hi")
        with pytest.raises(AttributeError):
            chunk.text = "changed"  # type: ignore[misc]

    def test_terminal_kinds(self) -> None:
        assert LifecycleEvent(kind=LifecycleKind.FINISHED).is_terminal
        assert LifecycleEvent(kind=LifecycleKind.START_FAILED).is_terminal
        assert not LifecycleEvent(kind=LifecycleKind.STARTED).is_terminal
        assert not LifecycleEvent(kind=LifecycleKind.RUNTIME_ERROR).is_terminal


# ---------------------------------------------------------------------------
# describe()
# ---------------------------------------------------------------------------


class TestDescribe:
    def test_started(self) -> None:
        assert describe(LifecycleEvent(kind=LifecycleKind.STARTED)) == "Shell running"

    def test_finished_with_code(self) -> None:
        event = LifecycleEvent(kind=LifecycleKind.FINISHED, exit_code=2)
        assert describe(event) == "Shell finished (exit code 2)"

    def test_crashed(self) -> None:
        event = LifecycleEvent(kind=LifecycleKind.FINISHED, exit_code=-9, crashed=True)
        assert describe(event) == "Shell crashed"

    def test_start_failed(self) -> None:
        event = LifecycleEvent(
            kind=LifecycleKind.START_FAILED, reason="/bin/nope: No such file"
        )
        assert describe(event) == "Shell failed to start: /bin/nope: No such file"
        assert describe(LifecycleEvent(kind=LifecycleKind.START_FAILED)) == (
            "Shell failed to start"
        )

    def test_runtime_error(self) -> None:
        event = LifecycleEvent(kind=LifecycleKind.RUNTIME_ERROR, reason="stdout broke")
        assert describe(event) == "Shell error: stdout broke"
        assert describe(LifecycleEvent(kind=LifecycleKind.RUNTIME_ERROR)) == "Shell error"


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------


class TestEventBus:
    def test_send_to_subscriber(self) -> None:
        bus = EventBus()
        q = bus.subscribe()
        bus.send(OutputChunk(stream=Stream.STDOUT, text="hi", seq=1))
        event = q.get_nowait()
        assert isinstance(event, OutputChunk)
        assert event.text == "hi"

    def test_send_to_multiple_subscribers(self) -> None:
        bus = EventBus()
        q1 = bus.subscribe()
        q2 = bus.subscribe()
        bus.send(LifecycleEvent(kind=LifecycleKind.STARTED, pid=42))
        assert q1.get_nowait() == q2.get_nowait()

    def test_order_preserved(self) -> None:
        bus = EventBus()
        q = bus.subscribe()
        for i in range(5):
            bus.send(OutputChunk(stream=Stream.STDERR, text=str(i), seq=i))
        assert [q.get_nowait().text for _ in range(5)] == ["0", "1", "2", "3", "4"]

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        q = bus.subscribe()
        bus.unsubscribe(q)
        bus.send(LifecycleEvent(kind=LifecycleKind.STARTED))
        assert q.empty()

    def test_unsubscribe_nonexistent_is_safe(self) -> None:
        bus = EventBus()
        q: asyncio.Queue[SessionEvent | None] = asyncio.Queue()
        bus.unsubscribe(q)  # Should not raise


class TestEventBusClosed:
    def test_close_sends_sentinel_to_all(self) -> None:
        bus = EventBus()
        q1 = bus.subscribe()
        q2 = bus.subscribe()
        bus.close()
        assert bus.closed
        assert q1.get_nowait() is None
        assert q2.get_nowait() is None

    def test_send_after_close_is_dropped(self) -> None:
        bus = EventBus()
        q = bus.subscribe()
        bus.close()
        q.get_nowait()  # drain sentinel
        bus.send(OutputChunk(stream=Stream.STDOUT, text="too late"))
        assert q.empty()

    def test_close_idempotent(self) -> None:
        bus = EventBus()
        q = bus.subscribe()
        bus.close()
        bus.close()
        assert q.get_nowait() is None
        assert q.empty()

    def test_subscribe_after_close_gets_sentinel(self) -> None:
        bus = EventBus()
        bus.close()
        q = bus.subscribe()
        assert q.get_nowait() is None
        assert q.empty()
