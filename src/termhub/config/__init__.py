"""Configuration — Pydantic models for termhub settings."""

from __future__ import annotations

import json
import os
from typing import Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field


def _default_shell_env() -> dict[str, str]:
    return {"TERM": "xterm-256color", "COLORTERM": "truecolor"}


class ShellConfig(BaseModel):
    """How session shells are launched.

    The program itself comes from ``$SHELL`` at spawn time;
    ``fallback_program`` is used only when that variable is unset.
    """

    fallback_program: str = Field(default="/bin/zsh")
    login: bool = Field(default=True, description="Pass -l to the shell")
    env: dict[str, str] = Field(
        default_factory=_default_shell_env,
        description="Extra environment for the shell (color support)",
    )


class TerminalConfig(BaseModel):
    """PTY geometry and pump settings."""

    default_cols: int = Field(default=80, gt=0)
    default_rows: int = Field(default=24, gt=0)
    read_chunk_size: int = Field(default=4096, gt=0)
    failure_exit_code: int = Field(
        default=1,
        description="Reported for every non-success exit (real code is not exposed)",
    )


class TermhubConfig(BaseModel):
    """Top-level termhub configuration."""

    shell: ShellConfig = Field(default_factory=ShellConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> TermhubConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            TERMHUB_FALLBACK_SHELL   - Shell used when $SHELL is unset
            TERMHUB_DEFAULT_COLS     - Default terminal width
            TERMHUB_DEFAULT_ROWS     - Default terminal height
            TERMHUB_READ_CHUNK_SIZE  - Bytes per PTY read
        """
        load_dotenv(find_dotenv(usecwd=True))

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        shell = config_data.get("shell", {})
        env_shell = os.environ.get("TERMHUB_FALLBACK_SHELL")
        if env_shell:
            shell["fallback_program"] = env_shell
        if shell:
            config_data["shell"] = shell

        terminal = config_data.get("terminal", {})
        for env_var, key in (
            ("TERMHUB_DEFAULT_COLS", "default_cols"),
            ("TERMHUB_DEFAULT_ROWS", "default_rows"),
            ("TERMHUB_READ_CHUNK_SIZE", "read_chunk_size"),
        ):
            value = os.environ.get(env_var)
            if value:
                terminal[key] = int(value)
        if terminal:
            config_data["terminal"] = terminal

        return cls.model_validate(config_data)
