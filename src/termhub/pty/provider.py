"""Pseudo-terminal provider — the contract the session manager depends on.

The manager never touches file descriptors directly. It asks a ``PtySystem``
for a master/slave pair, spawns a command on the slave side, and then works
with the reader, writer and resize capabilities the master hands out.

``NativePtySystem`` is the POSIX implementation (``os.openpty`` plus
``subprocess.Popen``). Tests substitute their own ``PtySystem``.
"""

from __future__ import annotations

import errno
import fcntl
import logging
import os
import signal
import struct
import subprocess
import termios
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PtySize:
    """Terminal geometry. Pixel dimensions are not tracked and default to 0."""

    rows: int = 24
    cols: int = 80
    pixel_width: int = 0
    pixel_height: int = 0


@dataclass
class CommandBuilder:
    """Describes the process to spawn on the slave side of a PTY."""

    program: str
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)

    def arg(self, value: str) -> CommandBuilder:
        self.args.append(value)
        return self

    def set_env(self, key: str, value: str) -> CommandBuilder:
        self.env[key] = value
        return self

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]


@dataclass(frozen=True)
class ExitStatus:
    """Outcome of waiting on a child process.

    ``code`` is the raw return code when the provider knows it (negative for
    death by signal, as with ``subprocess``), ``None`` otherwise.
    """

    code: int | None

    @property
    def success(self) -> bool:
        return self.code == 0


class PtyReader(ABC):
    """Output stream of the master side. ``read`` returns ``b""`` at EOF."""

    @abstractmethod
    def read(self, size: int) -> bytes: ...

    @abstractmethod
    def close(self) -> None: ...


class PtyWriter(ABC):
    """Input stream of the master side."""

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Write all of ``data``."""
        ...

    @abstractmethod
    def flush(self) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


class ChildProcess(ABC):
    """Handle on the process running on the slave side."""

    @property
    @abstractmethod
    def pid(self) -> int | None: ...

    @abstractmethod
    def wait(self) -> ExitStatus:
        """Block until the process exits."""
        ...

    @abstractmethod
    def kill(self) -> None:
        """Forcibly terminate the process (used only to undo a failed spawn)."""
        ...


class MasterPty(ABC):
    """Controlling side of a PTY pair."""

    @abstractmethod
    def try_clone_reader(self) -> PtyReader:
        """Return an independent reader bound to the master."""
        ...

    @abstractmethod
    def take_writer(self) -> PtyWriter:
        """Return the writer for the master. May only be taken once."""
        ...

    @abstractmethod
    def resize(self, size: PtySize) -> None: ...

    @abstractmethod
    def close(self) -> None:
        """Release the master. The line hangs up for the child."""
        ...


class SlavePty(ABC):
    """Subordinate side of a PTY pair."""

    @abstractmethod
    def spawn_command(self, command: CommandBuilder) -> ChildProcess: ...

    @abstractmethod
    def close(self) -> None: ...


@dataclass
class PtyPair:
    master: MasterPty
    slave: SlavePty


class PtySystem(ABC):
    """Factory for PTY pairs."""

    @abstractmethod
    def openpty(self, size: PtySize) -> PtyPair: ...


# ---------------------------------------------------------------------------
# Native POSIX implementation
# ---------------------------------------------------------------------------


def _set_winsize(fd: int, size: PtySize) -> None:
    winsize = struct.pack(
        "HHHH", size.rows, size.cols, size.pixel_width, size.pixel_height
    )
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _acquire_controlling_tty() -> None:
    """Runs in the child after setsid(): make the slave (fd 0) its terminal."""
    if hasattr(termios, "TIOCSCTTY"):
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class _FdReader(PtyReader):
    def __init__(self, fd: int) -> None:
        self._fd = fd
        self._closed = False

    def read(self, size: int) -> bytes:
        try:
            return os.read(self._fd, size)
        except OSError as e:
            # Linux reports EIO on the master once every slave fd is closed
            if e.errno == errno.EIO:
                return b""
            raise

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            os.close(self._fd)
        except OSError:
            pass


class _FdWriter(PtyWriter):
    def __init__(self, fd: int) -> None:
        self._fd = fd
        self._closed = False

    def write(self, data: bytes) -> None:
        if self._closed:
            raise OSError(errno.EBADF, "PTY writer is closed")
        view = memoryview(data)
        while view:
            written = os.write(self._fd, view)
            view = view[written:]

    def flush(self) -> None:
        # Unbuffered: every write() already reached the kernel
        if self._closed:
            raise OSError(errno.EBADF, "PTY writer is closed")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            os.close(self._fd)
        except OSError:
            pass


class _NativeChild(ChildProcess):
    def __init__(self, proc: subprocess.Popen) -> None:
        self._proc = proc

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    @property
    def running(self) -> bool:
        return self._proc.poll() is None

    def wait(self) -> ExitStatus:
        code = self._proc.wait()
        return ExitStatus(code=code)

    def hangup(self) -> None:
        """Deliver SIGHUP to the child's process group, as a terminal would."""
        if not self.running:
            return
        try:
            os.killpg(self._proc.pid, signal.SIGHUP)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._proc.pid)

    def kill(self) -> None:
        try:
            os.killpg(self._proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        self._proc.wait()


class _NativeMaster(MasterPty):
    def __init__(self, fd: int) -> None:
        self._fd = fd
        self._lock = threading.Lock()
        self._closed = False
        self._writer_taken = False
        self._child: _NativeChild | None = None

    def _check_open(self) -> None:
        if self._closed:
            raise OSError(errno.EBADF, "PTY master is closed")

    def try_clone_reader(self) -> PtyReader:
        with self._lock:
            self._check_open()
            return _FdReader(os.dup(self._fd))

    def take_writer(self) -> PtyWriter:
        with self._lock:
            self._check_open()
            if self._writer_taken:
                raise RuntimeError("PTY writer already taken")
            self._writer_taken = True
            return _FdWriter(os.dup(self._fd))

    def resize(self, size: PtySize) -> None:
        with self._lock:
            self._check_open()
            _set_winsize(self._fd, size)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                os.close(self._fd)
            except OSError:
                pass
            child = self._child
        # The pump's reader still holds a duplicate of the master, so closing
        # ours does not end the line by itself.
        if child is not None:
            child.hangup()


class _NativeSlave(SlavePty):
    def __init__(self, fd: int, master: _NativeMaster) -> None:
        self._fd = fd
        self._master = master
        self._closed = False

    def spawn_command(self, command: CommandBuilder) -> ChildProcess:
        if self._closed:
            raise OSError(errno.EBADF, "PTY slave is closed")
        env = {**os.environ, **command.env}
        proc = subprocess.Popen(
            command.argv,
            stdin=self._fd,
            stdout=self._fd,
            stderr=self._fd,
            cwd=command.cwd,
            env=env,
            start_new_session=True,  # setsid() so the PTY can become the ctty
            preexec_fn=_acquire_controlling_tty,
            close_fds=True,
        )
        child = _NativeChild(proc)
        self._master._child = child
        return child

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            os.close(self._fd)
        except OSError:
            pass


class NativePtySystem(PtySystem):
    """PTY provider backed by the host's ``openpty(3)``."""

    def openpty(self, size: PtySize) -> PtyPair:
        master_fd, slave_fd = os.openpty()
        try:
            _set_winsize(master_fd, size)
        except OSError:
            os.close(master_fd)
            os.close(slave_fd)
            raise
        master = _NativeMaster(master_fd)
        return PtyPair(master=master, slave=_NativeSlave(slave_fd, master))


def native_pty_system() -> PtySystem:
    return NativePtySystem()
