"""Session manager: spawn, write, resize, kill and list terminal sessions."""

from __future__ import annotations

import logging
import os
import threading
from typing import Any, TYPE_CHECKING

from termhub.config import TermhubConfig
from termhub.pty.errors import ProvisioningError, SessionNotFound, TerminalIOError
from termhub.pty.provider import (
    ChildProcess,
    CommandBuilder,
    PtyPair,
    PtySize,
    PtySystem,
    native_pty_system,
)
from termhub.pty.pump import OutputPump
from termhub.pty.session import (
    SESSION_COUNTER,
    Session,
    SessionIdAllocator,
    SessionTable,
)

if TYPE_CHECKING:
    from termhub.session.wire import Wire

logger = logging.getLogger(__name__)

# TIOCSWINSZ carries rows and cols as unsigned shorts
MAX_DIMENSION = 65535


def _valid_geometry(cols: int, rows: int) -> bool:
    return 0 < cols <= MAX_DIMENSION and 0 < rows <= MAX_DIMENSION


class SessionManager:
    """Owns every live terminal session.

    The manager guarantees:
    - Session ids are unique for the life of the process
    - A failed spawn leaves nothing behind (no table entry, no open PTY)
    - Each session ends exactly once, by its pump or by ``kill``
    - The table lock is never held across PTY I/O
    """

    def __init__(
        self,
        wire: Wire,
        pty_system: PtySystem | None = None,
        config: TermhubConfig | None = None,
        ids: SessionIdAllocator | None = None,
    ) -> None:
        self._wire = wire
        self._pty_system = pty_system or native_pty_system()
        self._config = config or TermhubConfig()
        self._ids = ids or SESSION_COUNTER
        self._table = SessionTable()
        self._pumps: dict[int, OutputPump] = {}
        self._pumps_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def spawn(
        self,
        cols: int | None = None,
        rows: int | None = None,
        cwd: str | None = None,
    ) -> int:
        """Start a login shell on a fresh PTY.

        Args:
            cols: Terminal width (default from config, 80).
            rows: Terminal height (default from config, 24).
            cwd: Working directory. Defaults to ``$HOME`` when set.

        Returns:
            The new session id.

        Raises:
            ProvisioningError: The geometry is out of range, or the PTY, the
                shell, or its I/O handles could not be obtained.
        """
        if cols is None:
            cols = self._config.terminal.default_cols
        if rows is None:
            rows = self._config.terminal.default_rows
        if not _valid_geometry(cols, rows):
            raise ProvisioningError(f"Invalid terminal size {cols}x{rows}")
        size = PtySize(rows=rows, cols=cols)
        command = self._build_command(cwd)

        try:
            pair = self._pty_system.openpty(size)
        except Exception as e:
            raise ProvisioningError(f"Failed to open PTY: {e}") from e

        try:
            child = pair.slave.spawn_command(command)
        except Exception as e:
            self._release_pair(pair)
            raise ProvisioningError(f"Failed to spawn shell: {e}") from e
        finally:
            # The child holds its own copy of the slave side
            self._close_slave(pair)

        try:
            reader = pair.master.try_clone_reader()
        except Exception as e:
            self._abort_spawn(pair, child)
            raise ProvisioningError(f"Failed to clone reader: {e}") from e

        try:
            writer = pair.master.take_writer()
        except Exception as e:
            reader.close()
            self._abort_spawn(pair, child)
            raise ProvisioningError(f"Failed to take writer: {e}") from e

        session_id = self._ids.allocate()
        session = Session(
            id=session_id,
            writer=writer,
            master=pair.master,
            shell=command.program,
            cwd=command.cwd,
            pid=child.pid,
            size=size,
        )
        self._table.insert(session)

        pump = OutputPump(
            session_id,
            reader,
            child,
            self._table,
            self._wire,
            chunk_size=self._config.terminal.read_chunk_size,
            failure_exit_code=self._config.terminal.failure_exit_code,
            on_done=self._forget_pump,
        )
        with self._pumps_lock:
            self._pumps[session_id] = pump
        try:
            pump.start()
        except Exception as e:
            self._forget_pump(pump)
            self._table.remove(session_id)
            session.close()
            reader.close()
            self._abort_spawn(pair, child)
            raise ProvisioningError(f"Failed to start output pump: {e}") from e

        logger.info(
            "Spawned terminal session %d with shell %s (pid=%s)",
            session_id,
            command.program,
            child.pid,
        )
        return session_id

    def write(self, session_id: int, data: str | bytes) -> None:
        """Send input to the shell and flush it immediately.

        Raises:
            SessionNotFound: The session is not live.
            TerminalIOError: The write or flush failed.
        """
        session = self._lookup(session_id)
        payload = data.encode("utf-8") if isinstance(data, str) else data
        logger.debug("Writing %d bytes to session %d", len(payload), session_id)
        try:
            session.write(payload)
        except (OSError, ValueError) as e:
            raise TerminalIOError(
                session_id, f"Failed to write to terminal: {e}"
            ) from e

    def resize(self, session_id: int, cols: int, rows: int) -> None:
        """Change the PTY geometry.

        Raises:
            SessionNotFound: The session is not live.
            TerminalIOError: The geometry is out of range or the resize call
                failed.
        """
        session = self._lookup(session_id)
        if not _valid_geometry(cols, rows):
            raise TerminalIOError(
                session_id, f"Invalid terminal size {cols}x{rows}"
            )
        logger.debug("Resizing session %d to %dx%d", session_id, cols, rows)
        try:
            session.resize(PtySize(rows=rows, cols=cols))
        except (OSError, ValueError) as e:
            raise TerminalIOError(
                session_id, f"Failed to resize terminal: {e}"
            ) from e

    def kill(self, session_id: int) -> None:
        """Retire a session and release its PTY.

        Does not wait for the shell to exit. The session's pump still sees
        the stream close and publishes the ``terminal-exit`` event.

        Raises:
            SessionNotFound: Nothing was live under ``session_id``.
        """
        session = self._table.remove(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        session.close()
        logger.info("Killed terminal session %d", session_id)

    def list(self) -> list[int]:
        """Ids of the currently live sessions (may be stale on return)."""
        return self._table.ids()

    # ------------------------------------------------------------------
    # Extras
    # ------------------------------------------------------------------

    def describe(self) -> list[dict[str, Any]]:
        """Bookkeeping for every live session."""
        return [s.describe() for s in self._table.snapshot()]

    def shutdown(self, timeout: float = 2.0) -> None:
        """Kill all sessions and wait for their pumps. Called on exit."""
        for session_id in self._table.ids():
            try:
                self.kill(session_id)
            except SessionNotFound:
                pass  # exited on its own meanwhile
        with self._pumps_lock:
            pumps = list(self._pumps.values())
        for pump in pumps:
            if not pump.join(timeout):
                logger.warning(
                    "Pump for session %d did not stop within %.1fs",
                    pump.session_id,
                    timeout,
                )
        logger.info("All terminal sessions cleaned up")

    def __enter__(self) -> SessionManager:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._table

    def __len__(self) -> int:
        return len(self._table)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lookup(self, session_id: int) -> Session:
        session = self._table.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def _build_command(self, cwd: str | None) -> CommandBuilder:
        shell_config = self._config.shell
        program = os.environ.get("SHELL") or shell_config.fallback_program
        command = CommandBuilder(program)
        if shell_config.login:
            command.arg("-l")
        if cwd:
            command.cwd = cwd
        else:
            command.cwd = os.environ.get("HOME") or None
        for key, value in shell_config.env.items():
            command.set_env(key, value)
        return command

    def _forget_pump(self, pump: OutputPump) -> None:
        with self._pumps_lock:
            self._pumps.pop(pump.session_id, None)

    @staticmethod
    def _close_slave(pair: PtyPair) -> None:
        try:
            pair.slave.close()
        except Exception:
            logger.debug("Error closing PTY slave", exc_info=True)

    @classmethod
    def _release_pair(cls, pair: PtyPair) -> None:
        cls._close_slave(pair)
        try:
            pair.master.close()
        except Exception:
            logger.debug("Error closing PTY master", exc_info=True)

    @classmethod
    def _abort_spawn(cls, pair: PtyPair, child: ChildProcess) -> None:
        """Undo a half-finished spawn: stop and reap the child, free the PTY."""
        try:
            child.kill()
        except Exception:
            logger.warning("Failed to kill orphaned shell pid=%s", child.pid, exc_info=True)
        cls._release_pair(pair)
