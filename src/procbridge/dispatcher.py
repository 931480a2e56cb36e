"""Concurrent execution of inbound invocations.

Every inbound Call or Notify runs in its own asyncio task so a slow or
reentrant handler (one that calls back across the bridge) never blocks the
session's read loop. Coroutine handlers run on the event loop; plain
functions each get a dedicated thread, so any number of them may block in
calls back across the bridge without starving the others.

Tasks are tracked until they finish so the session can wait for pending
Response writes before it shuts down.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import threading
from collections.abc import Awaitable, Callable, Sequence
from contextvars import ContextVar, copy_context
from typing import TYPE_CHECKING, Any

from .errors import BridgeError, EncodeError, FrameTooLargeError
from .protocol.envelopes import CallEnvelope, Failure, NotifyEnvelope, ResponseEnvelope
from .registry import Registry

if TYPE_CHECKING:
    from .session import BridgeSession

logger = logging.getLogger(__name__)

SendFn = Callable[[ResponseEnvelope], Awaitable[None]]

_current_session: ContextVar[BridgeSession | None] = ContextVar(
    "procbridge_current_session", default=None
)


def current_session() -> BridgeSession:
    """Return the session that delivered the invocation being handled.

    Available inside handlers (coroutines and threaded functions alike), so
    a handler can call back across the bridge:

        async def handler(x):
            return await current_session().call("host", "double", [x])

    Raises:
        RuntimeError: If called outside an inbound invocation
    """
    session = _current_session.get()
    if session is None:
        raise RuntimeError("No bridge session: not running inside an inbound invocation")
    return session


def _settle(future: asyncio.Future[Any], result: Any, exc: BaseException | None) -> None:
    if future.done():
        return
    if exc is not None:
        future.set_exception(exc)
    else:
        future.set_result(result)


async def _run_in_thread(handler: Callable[..., Any], args: Sequence[Any]) -> Any:
    """Run a plain function on its own daemon thread and await its outcome.

    Each call gets a fresh thread; there is no pool for handlers blocked in
    calls back across the bridge to exhaust.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[Any] = loop.create_future()
    context = copy_context()

    def target() -> None:
        try:
            outcome = (context.run(handler, *args), None)
        except BaseException as e:
            outcome = (None, e)
        # The loop is gone if the session ended while the handler ran
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(_settle, future, *outcome)

    name = getattr(handler, "__qualname__", "handler")
    threading.Thread(target=target, name=f"procbridge-{name}", daemon=True).start()
    return await future


class Dispatcher:
    """Runs inbound invocations and writes back their Responses.

    Args:
        registry: Resolves module/function names to handlers
        send: Writes a Response through the shared transport path
        session: Session published to handlers via current_session()
    """

    def __init__(
        self,
        registry: Registry,
        send: SendFn,
        session: BridgeSession | None = None,
    ) -> None:
        self._registry = registry
        self._send = send
        self._session = session
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        """Number of invocations still running."""
        return len(self._tasks)

    def dispatch(self, envelope: CallEnvelope | NotifyEnvelope) -> asyncio.Task[None]:
        """Start an independent task for one inbound invocation."""
        if isinstance(envelope, CallEnvelope):
            coro = self._run_call(envelope)
            name = f"procbridge-call-{envelope.id}-{envelope.target}"
        else:
            coro = self._run_notify(envelope)
            name = f"procbridge-notify-{envelope.target}"

        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def reject(self, envelope: CallEnvelope | NotifyEnvelope, exc: Exception) -> None:
        """Refuse an invocation without running it; Calls are answered with `exc`."""
        if isinstance(envelope, NotifyEnvelope):
            logger.debug(f"Dropping notification {envelope.target}: {exc}")
            return
        task = asyncio.create_task(
            self._reply(ResponseEnvelope.failure(envelope.id, exc)),
            name=f"procbridge-reject-{envelope.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self, timeout: float) -> bool:
        """Wait for running invocations, cancelling any still running after `timeout`.

        Returns:
            True if every invocation finished on its own
        """
        if not self._tasks:
            return True

        _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in still_running:
            logger.warning(f"Cancelling unfinished invocation {task.get_name()}")
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
        return not still_running

    async def _invoke(self, module: str, function: str, args: Sequence[Any]) -> Any:
        handler = self._registry.resolve(module, function)
        _current_session.set(self._session)
        if inspect.iscoroutinefunction(handler):
            return await handler(*args)
        return await _run_in_thread(handler, args)

    async def _run_call(self, envelope: CallEnvelope) -> None:
        try:
            value = await self._invoke(envelope.module, envelope.function, envelope.args)
            response = ResponseEnvelope.success(envelope.id, value)
        except Exception as e:
            logger.debug(f"Call {envelope.id} ({envelope.target}) raised {type(e).__name__}: {e}")
            response = ResponseEnvelope.failure(envelope.id, e)

        await self._reply(response)

    async def _run_notify(self, envelope: NotifyEnvelope) -> None:
        try:
            await self._invoke(envelope.module, envelope.function, envelope.args)
        except Exception as e:
            logger.warning(f"Notification {envelope.target} raised {type(e).__name__}: {e}")

    async def _reply(self, response: ResponseEnvelope) -> None:
        try:
            try:
                await self._send(response)
            except (EncodeError, FrameTooLargeError) as e:
                # The value cannot travel; report why instead, without a trace
                # so the report fits a narrow length field
                failure = Failure(category=type(e).__name__, reason=str(e))
                await self._send(ResponseEnvelope(id=response.id, result=failure))
        except BridgeError as e:
            logger.warning(f"Cannot deliver response {response.id}: {e}")
