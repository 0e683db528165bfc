"""Shell session: a managed interactive shell behind three pipes."""

from __future__ import annotations

import asyncio
import codecs
import enum
import itertools
import logging
import os
import signal
import threading
import uuid
from collections.abc import AsyncIterator

from myterm.config import SessionConfig
from myterm.session.errors import (
    NotRunningError,
    SendError,
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
)

logger = logging.getLogger(__name__)

_POSIX = os.name == "posix"
_POLL_INTERVAL = 0.05


class SessionState(enum.Enum):
    """Lifecycle states for a shell session."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"  # Exited on its own or after SIGTERM, with a code
    CRASHED = "crashed"  # Terminated by a signal
    FAILED_TO_START = "failed_to_start"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {SessionState.EXITED, SessionState.CRASHED, SessionState.FAILED_TO_START}
)


def _describe_returncode(returncode: int) -> str:
    if _POSIX and returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"killed by signal {name}"
    return f"exit code {returncode}"


class ShellSession:
    """A managed shell process.

    Owns exactly one child process and drives it through its lifecycle:
    - stdout and stderr drained by independent pump tasks
    - incremental decoding with replacement of malformed bytes
    - line input forwarded to stdin
    - terminate with SIGTERM, escalating to SIGKILL after a grace period
    - exactly one terminal event, published after trailing output is drained

    The child runs in its own process group so terminate reaches anything
    the shell spawned.
    """

    def __init__(self, config: SessionConfig | None = None) -> None:
        self.config = config or SessionConfig.from_environ()
        self.id = uuid.uuid4().hex[:8]

        self._bus = EventBus()
        # Buffers from construction so events()/poll() never miss STARTED.
        # Callers that only use subscribe() drop it with release_events().
        self._queue: asyncio.Queue[SessionEvent | None] | None = self._bus.subscribe()
        self._seq = itertools.count(1)

        self._lock = threading.Lock()
        self._state = SessionState.NOT_STARTED
        self._exit_code: int | None = None
        self._reason = ""

        self._proc: asyncio.subprocess.Process | None = None
        self._pgid = 0
        self._pumps: list[asyncio.Task] = []
        self._watcher: asyncio.Task | None = None
        self._terminator: asyncio.Task | None = None
        self._input_closed = False
        self._launched = asyncio.Event()
        self._done = asyncio.Event()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def alive(self) -> bool:
        return self._state == SessionState.RUNNING

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def exit_code(self) -> int | None:
        """Return code once the session finished; negative for signals."""
        return self._exit_code

    @property
    def reason(self) -> str:
        """Why the session reached its terminal state."""
        return self._reason

    def _transition(self, target: SessionState, *allowed: SessionState) -> bool:
        with self._lock:
            if self._state not in allowed:
                return False
            self._state = target
            return True

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self) -> asyncio.Queue[SessionEvent | None]:
        """Attach another consumer. See ``EventBus.subscribe``."""
        return self._bus.subscribe()

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._bus.unsubscribe(q)

    def release_events(self) -> None:
        """Drop the default queue behind ``events()`` and ``poll()``.

        For callers that consume through ``subscribe()`` only; otherwise the
        default queue keeps every event for the life of the session.
        """
        if self._queue is None:
            return
        self._bus.unsubscribe(self._queue)
        self._queue = None

    def _default_queue(self) -> asyncio.Queue[SessionEvent | None]:
        if self._queue is None:
            raise SessionStateError(
                f"Shell session {self.id}: default event queue was released"
            )
        return self._queue

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Iterate chunks and lifecycle events until the stream closes."""
        queue = self._default_queue()
        while True:
            event = await queue.get()
            if event is None:
                # Keep the sentinel so later iterations end immediately.
                queue.put_nowait(None)
                return
            yield event

    def poll(self) -> list[SessionEvent]:
        """Return every event queued so far without waiting."""
        queue = self._default_queue()
        events: list[SessionEvent] = []
        while True:
            try:
                event = queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if event is None:
                queue.put_nowait(None)
                break
            events.append(event)
        return events

    def _publish_lifecycle(self, kind: LifecycleKind, **data) -> None:
        self._bus.send(LifecycleEvent(kind=kind, seq=next(self._seq), **data))

    def _publish_text(self, stream: Stream, text: str) -> None:
        if text:
            self._bus.send(OutputChunk(stream=stream, text=text, seq=next(self._seq)))

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Launch the shell and begin streaming its output.

        Raises:
            SessionStateError: The session was already started.
            StartError: The shell did not become a running process.
        """
        if not self._transition(SessionState.STARTING, SessionState.NOT_STARTED):
            raise SessionStateError(
                f"Shell session {self.id} cannot start from state {self._state.value}"
            )

        shell = self.config.shell_path
        logger.info("Starting shell session %s: %s", self.id, shell)
        try:
            self._proc = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    shell,
                    *self.config.arguments,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=self.config.build_environment(),
                    cwd=self.config.cwd,
                    start_new_session=_POSIX,
                ),
                timeout=self.config.start_timeout,
            )
        except FileNotFoundError as e:
            raise self._fail_start(
                ShellNotFoundError(f"{shell}: {e.strerror or e}")
            ) from e
        except PermissionError as e:
            raise self._fail_start(
                ShellPermissionError(f"{shell}: {e.strerror or e}")
            ) from e
        except asyncio.TimeoutError as e:
            raise self._fail_start(
                StartTimeoutError(
                    f"{shell}: not started within {self.config.start_timeout:g}s"
                )
            ) from e
        except OSError as e:
            raise self._fail_start(StartError(f"{shell}: {e}")) from e
        finally:
            self._launched.set()

        # start_new_session makes the child its own process group leader.
        self._pgid = self._proc.pid
        self._transition(SessionState.RUNNING, SessionState.STARTING)
        self._publish_lifecycle(LifecycleKind.STARTED, pid=self._proc.pid)

        self._pumps = [
            asyncio.create_task(self._pump(Stream.STDOUT, self._proc.stdout)),
            asyncio.create_task(self._pump(Stream.STDERR, self._proc.stderr)),
        ]
        self._watcher = asyncio.create_task(self._watch())

        logger.info(
            "Shell session %s started: pid=%d cmd=%s %s",
            self.id,
            self._proc.pid,
            shell,
            " ".join(self.config.arguments),
        )

    def _fail_start(self, error: StartError) -> StartError:
        self._transition(SessionState.FAILED_TO_START, SessionState.STARTING)
        self._reason = error.reason
        logger.warning("Shell session %s failed to start: %s", self.id, error.reason)
        self._publish_lifecycle(LifecycleKind.START_FAILED, reason=error.reason)
        self._bus.close()
        self._done.set()
        return error

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    async def _pump(self, stream: Stream, reader: asyncio.StreamReader | None) -> None:
        """Forward one output pipe to the bus until end-of-stream."""
        if reader is None:
            return
        decoder = codecs.getincrementaldecoder(self.config.encoding)(errors="replace")
        while True:
            try:
                data = await reader.read(self.config.read_size)
            except OSError as e:
                logger.warning(
                    "Shell session %s: %s read failed: %s", self.id, stream.value, e
                )
                self._publish_lifecycle(
                    LifecycleKind.RUNTIME_ERROR,
                    reason=f"{stream.value} read failed: {e}",
                )
                break
            if not data:
                break
            self._emit(stream, decoder.decode(data))
        self._emit(stream, decoder.decode(b"", final=True))
        logger.debug("Shell session %s: %s reached end of stream", self.id, stream.value)

    def _emit(self, stream: Stream, text: str) -> None:
        if "\ufffd" in text:
            logger.debug(
                "Shell session %s: replaced undecodable %s bytes",
                self.id,
                stream.value,
            )
        self._publish_text(stream, text)

    # ------------------------------------------------------------------
    # Exit
    # ------------------------------------------------------------------

    async def _wait_exit(self, timeout: float | None = None) -> bool:
        """Poll for the child's return code. Returns False on timeout."""
        assert self._proc is not None
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._proc.returncode is None:
            if deadline is not None and loop.time() >= deadline:
                return False
            await asyncio.sleep(_POLL_INTERVAL)
        return True

    async def _watch(self) -> None:
        """Wait for the child to exit, drain output, publish the terminal event."""
        assert self._proc is not None
        await self._wait_exit()
        _, pending = await asyncio.wait(
            self._pumps, timeout=self.config.drain_timeout
        )
        if pending:
            logger.debug(
                "Shell session %s: output still open %.1fs after exit, dropping it",
                self.id,
                self.config.drain_timeout,
            )
            await self._cancel_pumps()
        for stream, task in zip((Stream.STDOUT, Stream.STDERR), self._pumps):
            if task.done() and not task.cancelled() and task.exception() is not None:
                error = task.exception()
                logger.warning(
                    "Shell session %s: %s pump failed: %r", self.id, stream.value, error
                )
                self._publish_lifecycle(
                    LifecycleKind.RUNTIME_ERROR,
                    reason=f"{stream.value} pump failed: {error}",
                )
        self._finish(self._proc.returncode)

    async def _cancel_pumps(self) -> None:
        for task in self._pumps:
            task.cancel()
        await asyncio.gather(*self._pumps, return_exceptions=True)

    def _finish(self, returncode: int) -> None:
        crashed = _POSIX and returncode < 0
        target = SessionState.CRASHED if crashed else SessionState.EXITED
        if not self._transition(target, SessionState.RUNNING):
            return
        self._exit_code = returncode
        self._reason = _describe_returncode(returncode)
        if self._proc is not None and self._proc.stdin is not None:
            self._proc.stdin.close()
        logger.info("Shell session %s %s (%s)", self.id, target.value, self._reason)
        self._publish_lifecycle(
            LifecycleKind.FINISHED,
            exit_code=returncode,
            crashed=crashed,
            reason=self._reason,
        )
        self._bus.close()
        self._done.set()

    async def wait(self, timeout: float | None = None) -> SessionState:
        """Wait until the session reaches a terminal state.

        Returns immediately for a session that was never started.

        Raises:
            asyncio.TimeoutError: No terminal state within ``timeout``.
        """
        if self._state == SessionState.NOT_STARTED:
            return self._state
        await asyncio.wait_for(self._done.wait(), timeout=timeout)
        return self._state

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    async def send(self, line: str) -> None:
        """Write ``line`` plus a newline to the shell's stdin.

        An empty line is a no-op.

        Raises:
            NotRunningError: The session is not running, or the child
                exited before the write went through.
            SendError: Input was closed with ``close_input()``.
        """
        proc = self._proc
        if self._state != SessionState.RUNNING or proc is None or proc.stdin is None:
            raise NotRunningError(
                f"Shell session {self.id} is not running ({self._state.value})"
            )
        if not line:
            return
        if proc.returncode is not None:
            raise NotRunningError(f"Shell session {self.id} has exited")
        if self._input_closed or proc.stdin.is_closing():
            raise SendError(f"Shell session {self.id}: input is closed")

        try:
            proc.stdin.write((line + "\n").encode(self.config.encoding, "replace"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise NotRunningError(
                f"Shell session {self.id} is not running: {e}"
            ) from e

    async def close_input(self) -> None:
        """Close the shell's stdin so it reads end-of-file."""
        proc = self._proc
        if proc is None or proc.stdin is None or proc.stdin.is_closing():
            return
        self._input_closed = True
        proc.stdin.close()
        try:
            await proc.stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Shell session %s: stdin already broken", self.id)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def terminate(self, grace_period: float | None = None) -> None:
        """Stop the shell: SIGTERM, then SIGKILL after ``grace_period``.

        Returns once the terminal event has been published. No-op for a
        session that never started or already finished; concurrent calls
        share a single termination.
        """
        if self._state == SessionState.STARTING:
            await self._launched.wait()
        if self._state != SessionState.RUNNING:
            return
        if self._terminator is None:
            grace = self.config.grace_period if grace_period is None else grace_period
            self._terminator = asyncio.create_task(self._terminate(grace))
        await asyncio.shield(self._terminator)

    async def _terminate(self, grace: float) -> None:
        assert self._proc is not None and self._watcher is not None
        if self._proc.returncode is None:
            self._signal(kill=False)
            if not await self._wait_exit(grace):
                logger.warning(
                    "Shell session %s still alive %.1fs after SIGTERM, killing",
                    self.id,
                    grace,
                )
                self._signal(kill=True)
                if not await self._wait_exit(self.config.kill_timeout):
                    logger.warning(
                        "Shell session %s not reaped after SIGKILL", self.id
                    )

        # The watcher drains output for at most drain_timeout once the child
        # is gone; leave it a little slack before giving up on it.
        bound = self.config.drain_timeout + 4 * _POLL_INTERVAL
        try:
            await asyncio.wait_for(asyncio.shield(self._watcher), timeout=bound)
        except asyncio.TimeoutError:
            self._watcher.cancel()
            await self._cancel_pumps()
            returncode = self._proc.returncode
            if returncode is None:
                returncode = -signal.SIGKILL if _POSIX else 1
            self._finish(returncode)

    def _signal(self, kill: bool) -> None:
        assert self._proc is not None
        try:
            if _POSIX:
                os.killpg(self._pgid, signal.SIGKILL if kill else signal.SIGTERM)
            elif kill:
                self._proc.kill()
            else:
                self._proc.terminate()
            logger.info(
                "Sent %s to shell session %s (pgid=%d)",
                "SIGKILL" if kill else "SIGTERM",
                self.id,
                self._pgid,
            )
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
        except OSError as e:
            logger.warning("Error signalling shell session %s: %s", self.id, e)

    async def close(self) -> None:
        """Dispose of the session, terminating the shell if still alive."""
        await self.terminate()
        self._bus.close()

    async def __aenter__(self) -> ShellSession:
        if self._state == SessionState.NOT_STARTED:
            await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def __del__(self) -> None:
        """Kill an abandoned shell so it cannot outlive its session."""
        proc = getattr(self, "_proc", None)
        if proc is not None and proc.returncode is None:
            self._signal(kill=True)
