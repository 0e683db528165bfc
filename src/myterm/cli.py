"""CLI entry point for myterm."""

from __future__ import annotations

import asyncio
import logging
import sys
import threading

import typer
from rich.console import Console
from rich.text import Text

from myterm import __version__
from myterm.config import SessionConfig
from myterm.session import (
    LifecycleEvent,
    LifecycleKind,
    OutputChunk,
    SendError,
    ShellSession,
    StartError,
    Stream,
    describe,
)

app = typer.Typer(
    name="myterm",
    help="Run your shell behind pipes with a line-oriented console.",
    no_args_is_help=True,
)

_STATUS_STYLES = {
    LifecycleKind.STARTED: "green",
    LifecycleKind.FINISHED: "bold",
    LifecycleKind.START_FAILED: "bold red",
    LifecycleKind.RUNTIME_ERROR: "red",
}


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def exit_status(session: ShellSession) -> int:
    """Map a finished session onto a process exit status."""
    code = session.exit_code
    if code is None:
        return 1
    if code < 0:
        return 128 - code
    return code


def render(console: Console, event: OutputChunk | LifecycleEvent) -> None:
    """Print one session event to the console."""
    if isinstance(event, OutputChunk):
        style = "red" if event.stream == Stream.STDERR else ""
        console.print(Text(event.text, style=style), end="", soft_wrap=True)
        return
    console.print(Text(describe(event), style=_STATUS_STYLES[event.kind]))


def _start_stdin_reader(
    loop: asyncio.AbstractEventLoop, lines: asyncio.Queue[str | None]
) -> None:
    """Feed stdin lines into ``lines`` from a daemon thread.

    ``None`` marks end of input. The thread is never joined: a blocked
    readline must not keep the process alive after the shell is gone.
    """

    def _reader() -> None:
        for line in sys.stdin:
            loop.call_soon_threadsafe(lines.put_nowait, line.rstrip("\n"))
        loop.call_soon_threadsafe(lines.put_nowait, None)

    threading.Thread(target=_reader, name="myterm-stdin", daemon=True).start()


async def _forward_input(
    session: ShellSession, lines: asyncio.Queue[str | None], console: Console
) -> None:
    while True:
        line = await lines.get()
        if line is None:
            await session.terminate()
            return
        try:
            await session.send(line)
        except SendError:
            console.print(Text("Shell is not running.", style="yellow"))
            return


async def run_console(
    config: SessionConfig,
    console: Console | None = None,
    lines: asyncio.Queue[str | None] | None = None,
) -> int:
    """Drive one shell session until it finishes.

    Input comes from ``lines`` when given, otherwise from stdin.
    """
    console = console or Console(highlight=False)
    session = ShellSession(config)

    console.print(Text(f"Starting {config.shell_path}..."))
    try:
        await session.start()
    except StartError:
        for event in session.poll():
            render(console, event)
        return 1

    if lines is None:
        lines = asyncio.Queue()
        _start_stdin_reader(asyncio.get_running_loop(), lines)
    input_task = asyncio.create_task(_forward_input(session, lines, console))
    try:
        async for event in session.events():
            render(console, event)
    finally:
        input_task.cancel()
        await asyncio.gather(input_task, return_exceptions=True)
        await session.close()
    return exit_status(session)


@app.command()
def run(
    shell: str | None = typer.Option(
        None, "--shell", "-s", help="Shell executable. Defaults to $SHELL or /bin/sh."
    ),
    grace: float | None = typer.Option(
        None, "--grace", help="Seconds to wait after SIGTERM before killing."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Path to a JSON config file."
    ),
) -> None:
    """Start a shell and forward typed lines to it."""
    setup_logging(verbose)

    config = SessionConfig.load(config_file)
    updates: dict[str, object] = {}
    if shell:
        updates["shell_path"] = shell
    if grace is not None:
        updates["grace_period"] = grace
    if updates:
        config = SessionConfig.model_validate({**config.model_dump(), **updates})

    try:
        status = asyncio.run(run_console(config))
    except KeyboardInterrupt:
        status = 130
    raise typer.Exit(status)


@app.command()
def version() -> None:
    """Print the myterm version."""
    typer.echo(f"myterm v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
