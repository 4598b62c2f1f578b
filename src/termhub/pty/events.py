"""Event payloads published by the output pump."""

from __future__ import annotations

from pydantic import BaseModel


class TerminalOutput(BaseModel):
    """``terminal-output``: one per successful PTY read."""

    session_id: int
    data: str


class TerminalExit(BaseModel):
    """``terminal-exit``: exactly one per session.

    ``exit_code`` is 0 on success, a fixed placeholder for any other outcome,
    and ``None`` when the child could not be waited on.
    """

    session_id: int
    exit_code: int | None
