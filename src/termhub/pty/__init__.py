"""PTY session management: shells on pseudo-terminals, relayed as events.

Every session is a login shell attached to its own PTY, with one output
pump thread relaying what the shell prints and announcing when it exits.
"""

from termhub.pty.errors import (
    ProvisioningError,
    SessionNotFound,
    TerminalError,
    TerminalIOError,
)
from termhub.pty.manager import SessionManager
from termhub.pty.provider import NativePtySystem, PtySize, PtySystem
from termhub.pty.session import Session, SessionIdAllocator, SessionTable

__all__ = [
    "SessionManager",
    "Session",
    "SessionTable",
    "SessionIdAllocator",
    "PtySystem",
    "PtySize",
    "NativePtySystem",
    "TerminalError",
    "ProvisioningError",
    "SessionNotFound",
    "TerminalIOError",
]
