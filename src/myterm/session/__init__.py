"""Shell session management.

A ``ShellSession`` owns one interactive shell process, streams its stdout
and stderr as decoded chunks, forwards input lines, and reports lifecycle
changes on an event bus.
"""

from myterm.session.errors import (
    NotRunningError,
    SendError,
    SessionError,
    SessionStateError,
    ShellNotFoundError,
    ShellPermissionError,
    StartError,
    StartTimeoutError,
)
from myterm.session.events import (
    EventBus,
    LifecycleEvent,
    LifecycleKind,
    OutputChunk,
    SessionEvent,
    Stream,
    describe,
)
from myterm.session.manager import SessionState, ShellSession

__all__ = [
    "ShellSession",
    "SessionState",
    "EventBus",
    "OutputChunk",
    "LifecycleEvent",
    "LifecycleKind",
    "SessionEvent",
    "Stream",
    "describe",
    "SessionError",
    "StartError",
    "ShellNotFoundError",
    "ShellPermissionError",
    "StartTimeoutError",
    "SendError",
    "NotRunningError",
    "SessionStateError",
]
