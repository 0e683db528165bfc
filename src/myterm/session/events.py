"""Session events and the bus that carries them to consumers.

Output chunks and lifecycle events flow from the session to any number of
subscribers. The console front-end (or a test) subscribes and renders;
the session never calls back into consumer code.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Union


class Stream(enum.Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


class LifecycleKind(enum.Enum):
    STARTED = "started"
    FINISHED = "finished"
    START_FAILED = "start_failed"
    RUNTIME_ERROR = "runtime_error"


@dataclass(frozen=True)
class OutputChunk:
    """Decoded text from one output stream.

    Not line-aligned: boundaries are whatever the pipe delivered.
    """

    stream: Stream
    text: str
    seq: int = 0


@dataclass(frozen=True)
class LifecycleEvent:
    """A change in the shell's lifecycle."""

    kind: LifecycleKind
    seq: int = 0
    pid: int | None = None
    exit_code: int | None = None
    crashed: bool = False
    reason: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.kind in (LifecycleKind.FINISHED, LifecycleKind.START_FAILED)


SessionEvent = Union[OutputChunk, LifecycleEvent]


def describe(event: LifecycleEvent) -> str:
    """Human-readable status line for a lifecycle event."""
    if event.kind == LifecycleKind.STARTED:
        return "Shell running"
    if event.kind == LifecycleKind.START_FAILED:
        if event.reason:
            return f"Shell failed to start: {event.reason}"
        return "Shell failed to start"
    if event.kind == LifecycleKind.FINISHED:
        if event.crashed:
            return "Shell crashed"
        return f"Shell finished (exit code {event.exit_code})"
    if event.reason:
        return f"Shell error: {event.reason}"
    return "Shell error"


class EventBus:
    """Async message bus: session -> subscribers.

    Single-producer, multi-consumer broadcast. Each subscriber gets its own
    unbounded queue, so a slow consumer never blocks the pumps.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[SessionEvent | None]] = []
        self._closed: bool = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: SessionEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def subscribe(self) -> asyncio.Queue[SessionEvent | None]:
        """Subscribe to events. Returns a queue to read from.

        A subscriber that arrives after ``close()`` only receives the
        ``None`` sentinel.
        """
        q: asyncio.Queue[SessionEvent | None] = asyncio.Queue()
        if self._closed:
            q.put_nowait(None)
        else:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    def close(self) -> None:
        """Signal all subscribers that no more events will follow."""
        if self._closed:
            return
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)
