"""procbridge CLI.

Starts a worker, performs one invocation and shuts the worker down again.
Handy for checking that a worker environment is set up correctly.

Usage:
    procbridge call operator add 2 3            # prints 5
    procbridge call json dumps '{"a": 1}'       # arguments are parsed as JSON
    procbridge call mypkg.mod slow --timeout 60
    procbridge cast logging warning "hello"     # fire-and-forget
    procbridge --verbose call os getpid         # debug logs on stderr

    procbridge call mymod func --python /opt/py/bin/python --python-path ./lib
    procbridge call mymod func --env DEBUG=1 --env HOME   # set DEBUG, unset HOME

    procbridge worker --packet 4 --use-stdio    # the worker itself

Exit codes: 1 remote exception, 2 timeout, 3 worker failed to start,
4 worker lost (exited or closed its pipes) before answering.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Callable
from typing import Any

import click

from .config import DEFAULT_CALL_TIMEOUT, BridgeOptions, default_python
from .errors import (
    BridgeStartError,
    CallTimeoutError,
    RemoteError,
    SessionClosedError,
    TransportClosedError,
)
from .protocol.codec import PACKET_WIDTHS
from .session import BridgeSession
from .worker import main as worker_main

# Exit codes
EXIT_REMOTE_ERROR = 1
EXIT_TIMEOUT = 2
EXIT_START_ERROR = 3
EXIT_TRANSPORT_ERROR = 4


def parse_argument(raw: str) -> Any:
    """Parse a command-line argument as JSON, falling back to the raw string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def parse_env(entries: tuple[str, ...]) -> list[tuple[str, str | None]]:
    """Parse --env entries: NAME=VALUE sets, NAME alone unsets."""
    overrides: list[tuple[str, str | None]] = []
    for entry in entries:
        name, sep, value = entry.partition("=")
        if not name:
            raise click.BadParameter(f"Invalid environment entry: {entry!r}", param_hint="--env")
        overrides.append((name, value if sep else None))
    return overrides


def bridge_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by commands that launch a worker."""
    decorators = [
        click.option(
            "--packet",
            type=click.Choice([str(width) for width in PACKET_WIDTHS]),
            default="4",
            help="Width in bytes of the frame length field",
        ),
        click.option("--python", "python", default=None, help="Interpreter for the worker"),
        click.option("--python-path", default=None, help="Extra module search path for the worker"),
        click.option(
            "--use-stdio/--no-use-stdio",
            default=True,
            help="Frames over the worker's stdio, or over a dedicated pipe pair",
        ),
        click.option(
            "--env",
            "env",
            multiple=True,
            help="NAME=VALUE to set or NAME to unset in the worker environment",
        ),
        click.option(
            "--timeout",
            type=float,
            default=DEFAULT_CALL_TIMEOUT,
            show_default=True,
            help="Call deadline in seconds",
        ),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


def _build_options(
    packet: str,
    python: str | None,
    python_path: str | None,
    use_stdio: bool,
    env: tuple[str, ...],
    timeout: float,
) -> BridgeOptions:
    try:
        return BridgeOptions(
            use_stdio=use_stdio,
            packet=int(packet),
            python=python or default_python(),
            python_path=python_path,
            env=parse_env(env),
            call_timeout=timeout,
        )
    except ValueError as e:
        raise click.UsageError(str(e)) from e


async def _invoke(
    options: BridgeOptions, mode: str, module: str, function: str, args: list
) -> Any:
    async with await BridgeSession.start(options) as session:
        if mode == "cast":
            await session.cast(module, function, args)
            return None
        return await session.call(module, function, args)


def _run(options: BridgeOptions, mode: str, module: str, function: str, args: list) -> Any:
    try:
        return asyncio.run(_invoke(options, mode, module, function, args))
    except RemoteError as e:
        click.echo(f"{e.category}: {e.reason}", err=True)
        if e.trace:
            click.echo(e.trace, err=True)
        sys.exit(EXIT_REMOTE_ERROR)
    except CallTimeoutError as e:
        click.echo(str(e), err=True)
        sys.exit(EXIT_TIMEOUT)
    except BridgeStartError as e:
        click.echo(str(e), err=True)
        sys.exit(EXIT_START_ERROR)
    except (TransportClosedError, SessionClosedError) as e:
        click.echo(f"Worker lost: {e}", err=True)
        sys.exit(EXIT_TRANSPORT_ERROR)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging on stderr")
def main(verbose: bool) -> None:
    """procbridge - call functions in a worker subprocess."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s: %(name)s: %(message)s",
        stream=sys.stderr,
    )


@main.command()
@click.argument("module")
@click.argument("function")
@click.argument("args", nargs=-1)
@bridge_options
def call(
    module: str,
    function: str,
    args: tuple[str, ...],
    packet: str,
    python: str | None,
    python_path: str | None,
    use_stdio: bool,
    env: tuple[str, ...],
    timeout: float,
) -> None:
    """Call MODULE.FUNCTION in a worker and print the JSON result."""
    options = _build_options(packet, python, python_path, use_stdio, env, timeout)
    result = _run(options, "call", module, function, [parse_argument(a) for a in args])
    click.echo(json.dumps(result, ensure_ascii=False, default=str))


@main.command()
@click.argument("module")
@click.argument("function")
@click.argument("args", nargs=-1)
@bridge_options
def cast(
    module: str,
    function: str,
    args: tuple[str, ...],
    packet: str,
    python: str | None,
    python_path: str | None,
    use_stdio: bool,
    env: tuple[str, ...],
    timeout: float,
) -> None:
    """Send MODULE.FUNCTION to a worker without waiting for a result."""
    options = _build_options(packet, python, python_path, use_stdio, env, timeout)
    _run(options, "cast", module, function, [parse_argument(a) for a in args])


main.add_command(worker_main, name="worker")


if __name__ == "__main__":
    main()
