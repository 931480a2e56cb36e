"""Session configuration.

BridgeOptions describes how the worker subprocess is launched and how the
session behaves once it is running. Both ends of the bridge must agree on
the packet width and the standard-io mode, so the worker receives them on
its command line.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

from .protocol.codec import PACKET_WIDTHS

# Interpreter used for the worker when none is configured explicitly
PYTHON_ENV_VAR = "PROCBRIDGE_PYTHON"

# Directory that contains the procbridge package; always first on the
# worker's PYTHONPATH so `python -m procbridge.worker` resolves
PACKAGE_ROOT = str(Path(__file__).resolve().parent.parent)

WORKER_MODULE = "procbridge.worker"

DEFAULT_CALL_TIMEOUT = 15.0
DEFAULT_START_TIMEOUT = 15.0
DEFAULT_SHUTDOWN_TIMEOUT = 5.0


def default_python() -> str:
    return os.getenv(PYTHON_ENV_VAR) or sys.executable


@dataclass
class BridgeOptions:
    """Options for starting a bridge session.

    Attributes:
        use_stdio: Exchange frames over the worker's stdin/stdout. When False
            a dedicated pipe pair is used and the worker inherits the host's
            standard streams.
        packet: Width in bytes of the frame length field (1, 2 or 4)
        python: Interpreter used to run the worker
        python_path: Extra module search path for the worker
        env: Ordered environment overrides; a value of None unsets the name
        call_timeout: Default deadline for `call`, in seconds
        start_timeout: Deadline for spawning the worker, in seconds
        shutdown_timeout: Bound on waiting for in-flight work and worker exit
        working_directory: Working directory for the worker
    """

    use_stdio: bool = True
    packet: int = 4
    python: str = field(default_factory=default_python)
    python_path: str | None = None
    env: list[tuple[str, str | None]] = field(default_factory=list)
    call_timeout: float = DEFAULT_CALL_TIMEOUT
    start_timeout: float = DEFAULT_START_TIMEOUT
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    working_directory: str | None = None

    def __post_init__(self) -> None:
        """Validate the options."""
        if self.packet not in PACKET_WIDTHS:
            raise ValueError(f"packet must be one of {PACKET_WIDTHS}, got {self.packet!r}")
        if not self.python:
            raise ValueError("python interpreter path cannot be empty")
        for name in ("call_timeout", "start_timeout", "shutdown_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        self.env = [tuple(item) for item in self.env]  # type: ignore[misc]
        for item in self.env:
            if len(item) != 2:
                raise ValueError(f"env entries must be (name, value) pairs, got {item!r}")
            name, value = item
            if not name or "=" in name:
                raise ValueError(f"Invalid environment variable name: {name!r}")
            if value is not None and not isinstance(value, str):
                raise ValueError(f"Environment value for {name} must be a string or None")

    def command(self, in_fd: int | None = None, out_fd: int | None = None) -> list[str]:
        """Build the worker command line.

        Args:
            in_fd: Descriptor the worker reads frames from (standard-io disabled)
            out_fd: Descriptor the worker writes frames to (standard-io disabled)
        """
        cmd = [self.python, "-u", "-m", WORKER_MODULE, f"--packet={self.packet}"]
        if self.use_stdio:
            cmd.append("--use-stdio")
        else:
            if in_fd is None or out_fd is None:
                raise ValueError("in_fd and out_fd are required when use_stdio is False")
            cmd.extend(["--no-use-stdio", f"--in-fd={in_fd}", f"--out-fd={out_fd}"])
        return cmd

    def environment(self, base: dict[str, str] | None = None) -> dict[str, str]:
        """Build the worker environment.

        Overrides are applied in order on top of `base` (default: the host's
        environment). PYTHONPATH always starts with the package root; it is
        followed by `python_path` when set, otherwise by any PYTHONPATH
        override.
        """
        env = dict(os.environ if base is None else base)
        env.pop("PYTHONPATH", None)
        override_path: str | None = None

        for name, value in self.env:
            if name == "PYTHONPATH":
                override_path = value
                continue
            if value is None:
                env.pop(name, None)
            else:
                env[name] = value

        search_path = [PACKAGE_ROOT]
        if self.python_path:
            search_path.append(self.python_path)
        elif override_path:
            search_path.append(override_path)
        env["PYTHONPATH"] = os.pathsep.join(search_path)
        return env
