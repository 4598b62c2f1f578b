"""CLI entry point for termhub."""

from __future__ import annotations

import logging
import os
import queue
import shutil
import signal
import sys
import termios
import threading
import time
import tty
from typing import TYPE_CHECKING

import typer
from rich.console import Console

from termhub.config import TermhubConfig
from termhub.pty.errors import TerminalError

if TYPE_CHECKING:
    from termhub.pty.manager import SessionManager
    from termhub.session.wire import Wire, WireEvent

app = typer.Typer(
    name="termhub",
    help="Run shells on pseudo-terminals and relay their I/O as events.",
    no_args_is_help=True,
)

# Status messages go to stderr so they never mix with relayed shell output
console = Console(stderr=True)


def setup_logging(verbose: bool = False, log_file: str | None = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        filename=log_file,
    )


def _build_manager(config: TermhubConfig) -> tuple[SessionManager, Wire]:
    from termhub.pty.manager import SessionManager
    from termhub.session.wire import Wire

    wire = Wire()
    return SessionManager(wire, config=config), wire


def _output_for(event: WireEvent, session_id: int) -> str | None:
    from termhub.session.wire import EventType

    if event.type == EventType.TERMINAL_OUTPUT and event.data["session_id"] == session_id:
        return event.data["data"]
    return None


def _is_exit_of(event: WireEvent, session_id: int) -> bool:
    from termhub.session.wire import EventType

    return event.type == EventType.TERMINAL_EXIT and event.data["session_id"] == session_id


@app.command()
def attach(
    cwd: str | None = typer.Option(
        None, "--cwd", "-C", help="Working directory (defaults to $HOME)."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    log_file: str | None = typer.Option(
        None, "--log-file", help="Write logs here instead of stderr."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Open an interactive shell session in this terminal."""
    if log_file:
        setup_logging(verbose, log_file)
    else:
        # Log lines on stderr would corrupt the raw-mode screen
        logging.getLogger().setLevel(logging.DEBUG if verbose else logging.WARNING)

    if not sys.stdin.isatty():
        typer.echo("Error: attach needs an interactive terminal on stdin", err=True)
        raise typer.Exit(1)

    config = TermhubConfig.load(config_file)
    exit_code = _run_attached(config, cwd)
    raise typer.Exit(exit_code if exit_code is not None else 1)


def _run_attached(config: TermhubConfig, cwd: str | None) -> int | None:
    manager, wire = _build_manager(config)
    events = wire.subscribe()
    size = shutil.get_terminal_size()

    try:
        session_id = manager.spawn(cols=size.columns, rows=size.lines, cwd=cwd)
    except TerminalError as e:
        console.print(f"[red]Error:[/] {e.message}")
        wire.close()
        return 1

    stdin_fd = sys.stdin.fileno()
    saved_attrs = termios.tcgetattr(stdin_fd)

    def _on_winch(signum: int, frame: object) -> None:
        current = shutil.get_terminal_size()
        try:
            manager.resize(session_id, current.columns, current.lines)
        except TerminalError:
            pass  # session is going away; its exit event follows

    def _pump_stdin() -> None:
        while True:
            try:
                data = os.read(stdin_fd, 1024)
            except OSError:
                return
            if not data:
                return
            try:
                manager.write(session_id, data)
            except TerminalError:
                return

    previous_winch = signal.signal(signal.SIGWINCH, _on_winch)
    exit_code: int | None = None
    try:
        tty.setraw(stdin_fd)
        threading.Thread(target=_pump_stdin, name="termhub-stdin", daemon=True).start()
        while True:
            event = events.get()
            if event is None:
                break
            text = _output_for(event, session_id)
            if text is not None:
                sys.stdout.write(text)
                sys.stdout.flush()
            elif _is_exit_of(event, session_id):
                exit_code = event.data["exit_code"]
                break
    finally:
        termios.tcsetattr(stdin_fd, termios.TCSADRAIN, saved_attrs)
        signal.signal(signal.SIGWINCH, previous_winch)
        manager.shutdown()
        wire.close()

    console.print(f"[dim]session {session_id} exited (code={exit_code})[/]")
    return exit_code


@app.command("exec")
def exec_command(
    command: str = typer.Argument(help="Command line to run in a login shell."),
    cwd: str | None = typer.Option(
        None, "--cwd", "-C", help="Working directory (defaults to $HOME)."
    ),
    timeout: float = typer.Option(
        30.0, "--timeout", "-t", help="Seconds to wait for the shell to exit."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Run COMMAND in a fresh terminal session and stream its output."""
    setup_logging(verbose)
    config = TermhubConfig.load(config_file)
    manager, wire = _build_manager(config)
    events = wire.subscribe()

    try:
        session_id = manager.spawn(cwd=cwd)
    except TerminalError as e:
        console.print(f"[red]Error:[/] {e.message}")
        raise typer.Exit(1)

    exit_code: int | None = None
    timed_out = False
    try:
        manager.write(session_id, f"{command}\nexit\n")
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                timed_out = True
                break
            try:
                event = events.get(timeout=remaining)
            except queue.Empty:
                continue
            if event is None:
                break
            text = _output_for(event, session_id)
            if text is not None:
                sys.stdout.write(text)
                sys.stdout.flush()
            elif _is_exit_of(event, session_id):
                exit_code = event.data["exit_code"]
                break
    except TerminalError as e:
        console.print(f"[red]Error:[/] {e.message}")
    finally:
        manager.shutdown()
        wire.close()

    if timed_out:
        console.print(f"[yellow]Timed out after {timeout:.0f}s[/]")
        raise typer.Exit(124)
    raise typer.Exit(exit_code if exit_code is not None else 1)


@app.command()
def version() -> None:
    """Print the termhub version."""
    typer.echo("termhub v0.1.0")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
