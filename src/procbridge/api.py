"""Module-level API mirroring the session methods."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

from .config import BridgeOptions
from .registry import Registry
from .session import BridgeSession


async def start(
    options: BridgeOptions | None = None,
    registry: Registry | None = None,
) -> BridgeSession:
    """Launch a worker and return its session.

    Raises:
        BridgeStartError: If the worker cannot be launched
    """
    return await BridgeSession.start(options, registry=registry)


async def stop(session: BridgeSession) -> None:
    """Stop a session and release its worker."""
    await session.stop()


async def call(
    session: BridgeSession,
    module: str,
    function: str,
    args: Sequence[Any] = (),
    timeout: float | None = None,
) -> Any:
    """Call module.function in the worker and return its result."""
    return await session.call(module, function, args, timeout=timeout)


async def cast(
    session: BridgeSession,
    module: str,
    function: str,
    args: Sequence[Any] = (),
) -> None:
    """Invoke module.function in the worker without waiting for it."""
    await session.cast(module, function, args)


@asynccontextmanager
async def open_session(
    options: BridgeOptions | None = None,
    registry: Registry | None = None,
) -> AsyncIterator[BridgeSession]:
    """Session whose lifetime is bound to the enclosing block.

    Example:
        async with open_session(BridgeOptions(packet=2)) as session:
            total = await session.call("operator", "add", [2, 3])
    """
    session = await BridgeSession.start(options, registry=registry)
    try:
        yield session
    finally:
        await session.stop()
