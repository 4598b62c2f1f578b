"""Error taxonomy for terminal session operations."""

from __future__ import annotations


class TerminalError(Exception):
    """Base class for every error returned by the session manager.

    Attributes:
        message: Human-readable error message.
        code: Stable error code for clients (e.g. ``"SESSION_NOT_FOUND"``).
    """

    def __init__(self, message: str, code: str) -> None:
        self.message = message
        self.code = code
        super().__init__(message)


class ProvisioningError(TerminalError):
    """PTY allocation, shell spawn, or handle acquisition failed.

    Fatal to the ``spawn`` call only. No session is registered.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message, "PROVISIONING_ERROR")


class SessionNotFound(TerminalError):
    """The session id is not live (never existed, or already ended)."""

    def __init__(self, session_id: int) -> None:
        self.session_id = session_id
        super().__init__(
            f"Terminal session {session_id} not found", "SESSION_NOT_FOUND"
        )


class TerminalIOError(TerminalError):
    """A write, flush or resize failed on a known session.

    Usually means the shell already exited; the caller should expect the
    session's ``terminal-exit`` event shortly.
    """

    def __init__(self, session_id: int, message: str) -> None:
        self.session_id = session_id
        super().__init__(message, "IO_ERROR")
