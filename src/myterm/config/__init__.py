"""Configuration: Pydantic model for shell session settings."""

from __future__ import annotations

import codecs
import json
import os
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_SHELL = "cmd.exe" if os.name == "nt" else "/bin/sh"

# Makes the shell behave as if attached to an interactive terminal.
DEFAULT_ENV_OVERRIDES = {
    "TERM": "xterm-256color",
    "PS1": "\\u@\\h:\\w $ ",
}


class SessionConfig(BaseModel):
    """Everything a ``ShellSession`` needs to launch and drive its shell.

    Build it with ``from_environ()`` or ``load()`` and hand it over. A
    session created without one snapshots ``os.environ`` the same way.
    """

    model_config = ConfigDict(frozen=True)

    shell_path: str = Field(default=DEFAULT_SHELL)
    arguments: list[str] = Field(
        default_factory=lambda: ["-i"],
        description="Launch arguments. Defaults to the interactive flag.",
    )
    base_environment: dict[str, str] = Field(
        default_factory=dict,
        description="Inherited environment the child starts from",
    )
    env_overrides: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_ENV_OVERRIDES),
        description="Variables merged on top of base_environment",
    )
    cwd: str | None = Field(default=None, description="Child working directory")
    encoding: str = Field(default="utf-8")
    read_size: int = Field(default=4096, gt=0)
    start_timeout: float = Field(
        default=3.0, gt=0, description="Seconds to wait for the launch to be confirmed"
    )
    grace_period: float = Field(
        default=1.0, ge=0, description="Seconds between SIGTERM and SIGKILL"
    )
    kill_timeout: float = Field(
        default=2.0, gt=0, description="Seconds to wait for reaping after SIGKILL"
    )
    drain_timeout: float = Field(
        default=1.0,
        ge=0,
        description="Seconds to wait for trailing output after the child exits",
    )

    @field_validator("encoding")
    @classmethod
    def _known_encoding(cls, v: str) -> str:
        try:
            codecs.lookup(v)
        except LookupError:
            raise ValueError(f"unknown encoding: {v}") from None
        return v

    def build_environment(self) -> dict[str, str]:
        """Child environment: base plus overrides (overrides win)."""
        return {**self.base_environment, **self.env_overrides}

    @classmethod
    def from_environ(
        cls, environ: Mapping[str, str] | None = None, **overrides: Any
    ) -> SessionConfig:
        """Snapshot an environment mapping into a config.

        ``SHELL`` selects the shell, falling back to ``DEFAULT_SHELL`` when
        unset or empty. Uses ``os.environ`` when no mapping is given.
        """
        env = dict(os.environ if environ is None else environ)
        data: dict[str, Any] = {
            "shell_path": env.get("SHELL") or DEFAULT_SHELL,
            "base_environment": env,
        }
        data.update(overrides)
        return cls.model_validate(data)

    @classmethod
    def load(
        cls,
        config_path: str | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> SessionConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults, except that a shell_path
        pinned in the file wins over SHELL.

        Env vars:
            SHELL                  - Shell executable, unless the file pins one
            MYTERM_START_TIMEOUT   - Launch confirmation bound in seconds
            MYTERM_GRACE_PERIOD    - Terminate-to-kill grace period in seconds
            MYTERM_ENCODING        - Output/input text encoding
            MYTERM_CWD             - Working directory for the shell
        """
        if environ is None:
            from dotenv import load_dotenv

            load_dotenv()
            environ = os.environ

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        env_start_timeout = environ.get("MYTERM_START_TIMEOUT")
        if env_start_timeout:
            config_data["start_timeout"] = float(env_start_timeout)

        env_grace = environ.get("MYTERM_GRACE_PERIOD")
        if env_grace:
            config_data["grace_period"] = float(env_grace)

        env_encoding = environ.get("MYTERM_ENCODING")
        if env_encoding:
            config_data["encoding"] = env_encoding

        env_cwd = environ.get("MYTERM_CWD")
        if env_cwd:
            config_data["cwd"] = env_cwd

        # A shell_path pinned in the file wins over SHELL.
        return cls.from_environ(environ, **config_data)
