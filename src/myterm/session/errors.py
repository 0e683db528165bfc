"""Error taxonomy for shell sessions."""

from __future__ import annotations


class SessionError(Exception):
    """Base class for all session errors."""


class StartError(SessionError):
    """The shell never became a running process.

    Leaves the session in ``FAILED_TO_START``. A new session is needed to retry.
    """

    kind = "error"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ShellNotFoundError(StartError):
    kind = "not_found"


class ShellPermissionError(StartError):
    kind = "permission_denied"


class StartTimeoutError(StartError):
    kind = "timeout"


class SendError(SessionError):
    """Input could not be delivered to the shell."""


class NotRunningError(SendError):
    """``send`` was called while the session was not running."""


class SessionStateError(SessionError):
    """An operation is not valid in the session's current state."""
