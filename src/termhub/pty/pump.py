"""Output pump — one background thread per session.

Relays PTY output to the wire until the stream ends, then reaps the child,
retires the session and publishes its single ``terminal-exit`` event.
"""

from __future__ import annotations

import codecs
import enum
import logging
import threading
from typing import TYPE_CHECKING, Callable

from termhub.pty.provider import ChildProcess, PtyReader

if TYPE_CHECKING:
    from termhub.pty.session import SessionTable
    from termhub.session.wire import Wire

logger = logging.getLogger(__name__)


class PumpState(enum.Enum):
    RUNNING = "running"
    TERMINATED = "terminated"


class OutputPump:
    """Sole owner of a session's reader and child process handle.

    Both are handed over at construction and never touched by anyone else.
    """

    def __init__(
        self,
        session_id: int,
        reader: PtyReader,
        child: ChildProcess,
        table: SessionTable,
        wire: Wire,
        chunk_size: int = 4096,
        failure_exit_code: int = 1,
        on_done: Callable[[OutputPump], None] | None = None,
    ) -> None:
        self.session_id = session_id
        self._reader = reader
        self._child = child
        self._table = table
        self._wire = wire
        self._chunk_size = chunk_size
        self._failure_exit_code = failure_exit_code
        self._on_done = on_done
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._state = PumpState.RUNNING
        self._thread = threading.Thread(
            target=self._run, name=f"termhub-pump-{session_id}", daemon=True
        )

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the pump to terminate. Returns False on timeout."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def state(self) -> PumpState:
        return self._state

    def _run(self) -> None:
        try:
            self._read_loop()
        finally:
            try:
                self._terminate()
            finally:
                self._state = PumpState.TERMINATED
                if self._on_done is not None:
                    self._on_done(self)

    def _read_loop(self) -> None:
        while True:
            try:
                data = self._reader.read(self._chunk_size)
            except Exception as e:
                logger.error("PTY read error on session %d: %s", self.session_id, e)
                return
            if not data:
                return
            # Split multibyte sequences are carried to the next read;
            # invalid bytes become U+FFFD.
            text = self._decoder.decode(data)
            if text:
                self._publish_output(text)

    def _terminate(self) -> None:
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._publish_output(tail)
        try:
            self._reader.close()
        except Exception:
            logger.warning(
                "Error closing reader for session %d", self.session_id,
                exc_info=True,
            )

        exit_code = self._reap()

        # Retire before announcing, so a consumer reacting to terminal-exit
        # never finds the id still listed.
        session = self._table.remove(self.session_id)
        if session is not None:
            session.close()

        logger.info("Terminal session %d exited (code=%s)", self.session_id, exit_code)
        try:
            self._wire.send_terminal_exit(self.session_id, exit_code)
        except Exception:
            logger.warning(
                "Failed to publish exit for session %d", self.session_id,
                exc_info=True,
            )

    def _reap(self) -> int | None:
        """Wait for the child and map its status to the published code."""
        try:
            status = self._child.wait()
        except Exception as e:
            logger.error("Failed to wait on session %d: %s", self.session_id, e)
            return None
        if status.success:
            return 0
        # Only success is reported faithfully; every other outcome collapses
        # to the placeholder code.
        logger.debug(
            "Session %d child returned %s", self.session_id, status.code
        )
        return self._failure_exit_code

    def _publish_output(self, text: str) -> None:
        try:
            self._wire.send_terminal_output(self.session_id, text)
        except Exception:
            logger.warning(
                "Failed to publish output for session %d", self.session_id,
                exc_info=True,
            )
