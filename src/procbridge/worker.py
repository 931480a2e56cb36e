"""Worker runtime: the subprocess end of the bridge.

Launched by the host as:

    python -u -m procbridge.worker --packet=4 --use-stdio
    python -u -m procbridge.worker --packet=4 --no-use-stdio --in-fd=5 --out-fd=8

Inbound calls name any importable module and function (optionally limited
with --allow). Worker functions can call back into the host:

    from procbridge.worker import call_host

    def lookup(key):                       # plain function, runs on a thread
        return call_host("host", "get_setting", [key])

    async def alookup(key):                # coroutine, runs on the loop
        return await current_session().call("host", "get_setting", [key])

With standard-io enabled the protocol owns the original stdout; anything
else written to stdout (print, C extensions, child processes) goes to
stderr instead.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Sequence
from typing import Any, BinaryIO

import click

from .config import DEFAULT_CALL_TIMEOUT, BridgeOptions
from .dispatcher import current_session
from .protocol.codec import PACKET_WIDTHS
from .registry import ModuleRegistry, Registry
from .session import BridgeSession
from .transport.base import FrameTransport
from .transport.pipes import connect_pipes

logger = logging.getLogger(__name__)

LOG_LEVEL_ENV_VAR = "PROCBRIDGE_LOG_LEVEL"


def call_host(
    module: str,
    function: str,
    args: Sequence[Any] = (),
    timeout: float | None = None,
) -> Any:
    """Call a host function from a worker function running on a thread."""
    return current_session().call_from_thread(module, function, args, timeout)


def cast_host(module: str, function: str, args: Sequence[Any] = ()) -> None:
    """Notify a host function from a worker function running on a thread."""
    current_session().cast_from_thread(module, function, args)


async def serve(
    read_file: BinaryIO,
    write_file: BinaryIO,
    packet: int = 4,
    registry: Registry | None = None,
    call_timeout: float = DEFAULT_CALL_TIMEOUT,
) -> None:
    """Serve the bridge over a pipe pair until the host closes it."""
    reader, writer, read_transport = await connect_pipes(read_file, write_file)
    transport = FrameTransport(reader, writer, packet, read_transport=read_transport)
    session = await BridgeSession.attach(
        transport,
        registry=registry or ModuleRegistry(),
        options=BridgeOptions(packet=packet, call_timeout=call_timeout),
        name="host",
    )
    logger.debug(f"Worker {os.getpid()} serving (packet={packet})")
    await session.wait_closed()


def _protocol_files(
    use_stdio: bool, in_fd: int | None, out_fd: int | None
) -> tuple[BinaryIO, BinaryIO]:
    if not use_stdio:
        if in_fd is None or out_fd is None:
            raise click.UsageError("--no-use-stdio requires --in-fd and --out-fd")
        return os.fdopen(in_fd, "rb", buffering=0), os.fdopen(out_fd, "wb", buffering=0)

    # Keep the real stdout for frames and point fd 1 at stderr
    protocol_out = os.dup(sys.stdout.fileno())
    os.dup2(sys.stderr.fileno(), sys.stdout.fileno())
    return os.fdopen(os.dup(sys.stdin.fileno()), "rb", buffering=0), os.fdopen(
        protocol_out, "wb", buffering=0
    )


@click.command()
@click.option(
    "--packet",
    type=click.Choice([str(width) for width in PACKET_WIDTHS]),
    default="4",
    help="Width in bytes of the frame length field",
)
@click.option(
    "--use-stdio/--no-use-stdio",
    default=True,
    help="Exchange frames over stdin/stdout or over --in-fd/--out-fd",
)
@click.option("--in-fd", type=int, default=None, help="Descriptor to read frames from")
@click.option("--out-fd", type=int, default=None, help="Descriptor to write frames to")
@click.option(
    "--allow",
    multiple=True,
    help="Module prefix the host may call (repeatable, default: any module)",
)
@click.option(
    "--call-timeout",
    type=float,
    default=DEFAULT_CALL_TIMEOUT,
    help="Default deadline for calls back into the host, in seconds",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=lambda: os.getenv(LOG_LEVEL_ENV_VAR, "WARNING"),
    help=f"Log level for worker diagnostics on stderr (env: {LOG_LEVEL_ENV_VAR})",
)
def main(
    packet: str,
    use_stdio: bool,
    in_fd: int | None,
    out_fd: int | None,
    allow: tuple[str, ...],
    call_timeout: float,
    log_level: str,
) -> None:
    """procbridge worker - executes calls sent by the host process."""
    # Logs go to stderr; stdout may carry the protocol
    logging.basicConfig(
        level=log_level.upper(),
        format="%(levelname)s: [worker %(process)d] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    read_file, write_file = _protocol_files(use_stdio, in_fd, out_fd)
    try:
        asyncio.run(serve(read_file, write_file, int(packet), ModuleRegistry(allow), call_timeout))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
