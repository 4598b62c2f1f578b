"""Live session records and the table that owns them."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from termhub.pty.provider import MasterPty, PtySize, PtyWriter

logger = logging.getLogger(__name__)


class SessionIdAllocator:
    """Monotonic session id source. Ids are never reused."""

    def __init__(self, start: int = 0) -> None:
        self._next = start
        self._lock = threading.Lock()

    def allocate(self) -> int:
        with self._lock:
            session_id = self._next
            self._next += 1
            return session_id


# Process-wide counter shared by every manager that isn't given its own
SESSION_COUNTER = SessionIdAllocator()


@dataclass
class Session:
    """One running shell bound to one PTY.

    Holds the writer and the master (the resize handle). The master must stay
    open for the whole session: closing it hangs up the child's terminal.
    The reader and the child handle belong to the session's output pump.
    """

    id: int
    writer: PtyWriter
    master: MasterPty
    shell: str = ""
    cwd: str | None = None
    pid: int | None = None
    size: PtySize = field(default_factory=PtySize)
    created_at: float = field(default_factory=time.time)

    _write_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )
    _state_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )
    _closed: bool = field(default=False, init=False, repr=False)

    def write(self, data: bytes) -> None:
        """Write and flush. Serialized per session; raises ``OSError``."""
        with self._write_lock:
            if self._closed:
                raise OSError(f"session {self.id} is closed")
            self.writer.write(data)
            self.writer.flush()

    def resize(self, size: PtySize) -> None:
        with self._state_lock:
            if self._closed:
                raise OSError(f"session {self.id} is closed")
            self.master.resize(size)
            self.size = size

    def close(self) -> None:
        """Drop the writer and release the PTY. Idempotent."""
        # Not under the write lock: a write blocked on a full PTY buffer must
        # not hold up the hangup.
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        try:
            self.writer.close()
        except Exception:
            logger.warning("Error closing writer for session %d", self.id, exc_info=True)
        try:
            self.master.close()
        except Exception:
            logger.warning("Error closing PTY for session %d", self.id, exc_info=True)

    @property
    def closed(self) -> bool:
        return self._closed

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "shell": self.shell,
            "cwd": self.cwd,
            "pid": self.pid,
            "cols": self.size.cols,
            "rows": self.size.rows,
            "created_at": self.created_at,
        }


class SessionTable:
    """Thread-safe map of session id -> Session.

    Every operation holds the lock only for the dict access itself; callers
    do their I/O on the returned Session after the lock is released.
    Removal is the one authoritative "session ended" signal and is
    idempotent: only the first remover gets the Session back.
    """

    def __init__(self) -> None:
        self._sessions: dict[int, Session] = {}
        self._retired: set[int] = set()
        self._lock = threading.Lock()

    def insert(self, session: Session) -> None:
        with self._lock:
            if session.id in self._sessions or session.id in self._retired:
                raise ValueError(f"Session id {session.id} already issued")
            self._sessions[session.id] = session

    def get(self, session_id: int) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: int) -> Session | None:
        """Remove and return the session, or ``None`` if already absent."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None:
                self._retired.add(session_id)
            return session

    def ids(self) -> list[int]:
        with self._lock:
            return sorted(self._sessions)

    def snapshot(self) -> list[Session]:
        with self._lock:
            return [self._sessions[k] for k in sorted(self._sessions)]

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
