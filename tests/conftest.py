"""Shared fixtures: a scriptable in-memory PTY provider."""

from __future__ import annotations

import queue
import threading
from collections.abc import Iterator

import pytest

from termhub.pty.manager import SessionManager
from termhub.pty.provider import (
    ChildProcess,
    CommandBuilder,
    ExitStatus,
    MasterPty,
    PtyPair,
    PtyReader,
    PtySize,
    PtySystem,
    PtyWriter,
    SlavePty,
)
from termhub.pty.session import SessionIdAllocator
from termhub.session.wire import EventType, Wire, WireEvent

# Exit code a fake shell reports when its terminal is hung up
HANGUP_CODE = -1


class FakeReader(PtyReader):
    def __init__(self) -> None:
        self.chunks: queue.Queue[bytes | Exception] = queue.Queue()
        self.closed = False

    def read(self, size: int) -> bytes:
        item = self.chunks.get()
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.closed = True


class FakeWriter(PtyWriter):
    def __init__(self) -> None:
        self.written: list[bytes] = []
        self.flushes = 0
        self.fail_with: Exception | None = None
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        if self.closed:
            raise OSError("writer closed")
        self.written.append(bytes(data))

    def flush(self) -> None:
        self.flushes += 1

    def close(self) -> None:
        self.closed = True

    @property
    def data(self) -> bytes:
        return b"".join(self.written)


class FakeChild(ChildProcess):
    def __init__(self, pid: int = 4242) -> None:
        self._pid = pid
        self._exited = threading.Event()
        self.code: int | None = None
        self.wait_error: Exception | None = None
        self.killed = False
        self.wait_calls = 0

    @property
    def pid(self) -> int | None:
        return self._pid

    def exit(self, code: int) -> None:
        if not self._exited.is_set():
            self.code = code
            self._exited.set()

    def wait(self) -> ExitStatus:
        self.wait_calls += 1
        self._exited.wait(timeout=5)
        if self.wait_error is not None:
            raise self.wait_error
        return ExitStatus(code=self.code)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeMaster(MasterPty):
    def __init__(self, pair: FakePair) -> None:
        self._pair = pair
        self.reader = FakeReader()
        self.writer = FakeWriter()
        self.sizes: list[PtySize] = []
        self.resize_error: Exception | None = None
        self.reader_error: Exception | None = None
        self.writer_error: Exception | None = None
        self.closed = False

    def try_clone_reader(self) -> PtyReader:
        if self.reader_error is not None:
            raise self.reader_error
        return self.reader

    def take_writer(self) -> PtyWriter:
        if self.writer_error is not None:
            raise self.writer_error
        return self.writer

    def resize(self, size: PtySize) -> None:
        if self.resize_error is not None:
            raise self.resize_error
        self.sizes.append(size)

    def close(self) -> None:
        # Hang up: the shell dies and the stream ends
        self.closed = True
        self._pair.exit(HANGUP_CODE)


class FakeSlave(SlavePty):
    def __init__(self, pair: FakePair) -> None:
        self._pair = pair
        self.spawn_error: Exception | None = None
        self.command: CommandBuilder | None = None
        self.closed = False

    def spawn_command(self, command: CommandBuilder) -> ChildProcess:
        if self.spawn_error is not None:
            raise self.spawn_error
        self.command = command
        return self._pair.child

    def close(self) -> None:
        self.closed = True


class FakePair(PtyPair):
    """A PTY pair plus controls to script the shell on the other side."""

    def __init__(self, size: PtySize, pid: int) -> None:
        self.size = size
        self.child = FakeChild(pid)
        super().__init__(master=FakeMaster(self), slave=FakeSlave(self))

    def emit(self, data: bytes) -> None:
        """Make the shell print ``data``."""
        self.master.reader.chunks.put(data)

    def fail_read(self, error: Exception) -> None:
        self.master.reader.chunks.put(error)

    def exit(self, code: int) -> None:
        """Make the shell exit: the stream ends."""
        if self.child.code is None:
            self.child.exit(code)
            self.master.reader.chunks.put(b"")


class FakePtySystem(PtySystem):
    def __init__(self) -> None:
        self.pairs: list[FakePair] = []
        self._lock = threading.Lock()
        self.open_error: Exception | None = None
        # Applied to the next pair opened
        self.next_spawn_error: Exception | None = None
        self.next_reader_error: Exception | None = None
        self.next_writer_error: Exception | None = None

    def openpty(self, size: PtySize) -> PtyPair:
        if self.open_error is not None:
            raise self.open_error
        with self._lock:
            pair = FakePair(size, pid=1000 + len(self.pairs))
            pair.slave.spawn_error = self.next_spawn_error
            pair.master.reader_error = self.next_reader_error
            pair.master.writer_error = self.next_writer_error
            self.pairs.append(pair)
        return pair


def next_event(q: queue.Queue[WireEvent | None], timeout: float = 2.0) -> WireEvent:
    event = q.get(timeout=timeout)
    assert event is not None, "wire closed unexpectedly"
    return event


def collect_until_exit(
    q: queue.Queue[WireEvent | None], session_id: int, timeout: float = 2.0
) -> list[WireEvent]:
    """Drain events up to and including ``session_id``'s exit event."""
    events = []
    while True:
        event = next_event(q, timeout)
        events.append(event)
        if (
            event.type == EventType.TERMINAL_EXIT
            and event.data["session_id"] == session_id
        ):
            return events


@pytest.fixture
def wire() -> Wire:
    return Wire()


@pytest.fixture
def pty_system() -> FakePtySystem:
    return FakePtySystem()


@pytest.fixture
def manager(wire: Wire, pty_system: FakePtySystem) -> Iterator[SessionManager]:
    mgr = SessionManager(wire, pty_system=pty_system, ids=SessionIdAllocator())
    yield mgr
    mgr.shutdown(timeout=1.0)
