"""Bridge session: the control actor for one worker subprocess.

The session owns the transport, the correlation table and the dispatcher.
Its event loop thread is the single serialization point: request ids are
allocated, pending calls are registered and resolved, and deadlines fire,
all on that thread. Nothing on it ever waits for an inbound invocation;
those run as independent dispatcher tasks.

Data flow:
    call/cast -> encode -> transport.send -> worker
    worker -> transport.receive -> decode -> route:
        Response       -> correlation table (resolve by id)
        Call / Notify  -> dispatcher (own task) -> Response via transport

Transport loss policy: when the worker exits or its pipes fail, every
pending call is failed immediately with TransportClosedError rather than
being left to run into its own deadline.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Sequence
from enum import Enum
from typing import Any

from .config import BridgeOptions
from .correlation import CorrelationTable
from .dispatcher import Dispatcher
from .errors import (
    MalformedFrameError,
    ProtocolViolationError,
    RemoteError,
    SessionClosedError,
    TransportClosedError,
)
from .protocol.envelopes import CallEnvelope, Failure, NotifyEnvelope, ResponseEnvelope
from .registry import FunctionRegistry, Registry
from .transport.base import FrameTransport
from .transport.process import SubprocessTransport

logger = logging.getLogger(__name__)

# Request ids are unsigned 64-bit integers and wrap around
ID_SPACE = 1 << 64


class SessionState(str, Enum):
    """Session lifecycle."""

    RUNNING = "running"
    STOPPING = "stopping"
    CLOSED = "closed"


def _validate_request(module: Any, function: Any, args: Any) -> list[Any]:
    """Check the shape of an outbound request.

    Raises:
        ProtocolViolationError: If the request cannot be expressed on the wire
    """
    if not isinstance(module, str) or not module:
        raise ProtocolViolationError(f"Module must be a non-empty string, got {module!r}")
    if not isinstance(function, str) or not function:
        raise ProtocolViolationError(f"Function must be a non-empty string, got {function!r}")
    if not isinstance(args, list | tuple):
        raise ProtocolViolationError(
            f"Arguments must be a list or tuple, got {type(args).__name__}"
        )
    return list(args)


def _consume_send_outcome(task: asyncio.Task[None]) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Abandoned write failed: {task.exception()}")


class BridgeSession:
    """One live bridge to one worker.

    Create with `BridgeSession.start()` to launch a worker subprocess, or
    `BridgeSession.attach()` to run over an already connected transport (the
    worker side uses this for its own end of the pipes).

    Usage:
        async with await BridgeSession.start(BridgeOptions(packet=4)) as session:
            assert await session.call("operator", "add", [2, 3]) == 5
            await session.cast("logging", "warning", ["hello"])
    """

    def __init__(
        self,
        transport: FrameTransport,
        registry: Registry | None = None,
        options: BridgeOptions | None = None,
        name: str = "bridge",
    ) -> None:
        """Initialize a session; must be called inside a running event loop."""
        self._transport = transport
        self._registry = registry or FunctionRegistry()
        self._options = options or BridgeOptions(packet=transport.packet)
        self._name = name
        self._loop = asyncio.get_running_loop()

        self._table = CorrelationTable(self._loop)
        self._dispatcher = Dispatcher(self._registry, transport.send, session=self)
        self._next_id = 0
        self._state = SessionState.RUNNING
        self._closed = asyncio.Event()
        self._release_task: asyncio.Task[None] | None = None
        self._reader_task = asyncio.create_task(self._read_loop(), name=f"procbridge-reader-{name}")

    @classmethod
    async def start(
        cls,
        options: BridgeOptions | None = None,
        registry: Registry | None = None,
    ) -> BridgeSession:
        """Launch a worker subprocess and return a running session.

        Args:
            options: How to launch the worker (defaults to BridgeOptions())
            registry: Host functions the worker may call back

        Raises:
            BridgeStartError: If the worker cannot be launched
        """
        options = options or BridgeOptions()
        transport = await SubprocessTransport.spawn(options)
        session = cls(transport, registry=registry, options=options, name=f"worker-{transport.pid}")
        logger.info(f"Session {session.name} started (packet={options.packet})")
        return session

    @classmethod
    async def attach(
        cls,
        transport: FrameTransport,
        registry: Registry | None = None,
        options: BridgeOptions | None = None,
        name: str = "bridge",
    ) -> BridgeSession:
        """Run a session over an existing transport."""
        return cls(transport, registry=registry, options=options, name=name)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SessionState.RUNNING

    @property
    def closed(self) -> bool:
        return self._state is SessionState.CLOSED

    @property
    def options(self) -> BridgeOptions:
        return self._options

    @property
    def registry(self) -> Registry:
        return self._registry

    @property
    def transport(self) -> FrameTransport:
        return self._transport

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def outstanding(self) -> list[int]:
        """Ids of outbound calls still awaiting a response."""
        return self._table.ids()

    @property
    def pending_invocations(self) -> int:
        """Number of inbound invocations still running."""
        return self._dispatcher.pending

    # ------------------------------------------------------------------
    # Outbound operations
    # ------------------------------------------------------------------

    async def call(
        self,
        module: str,
        function: str,
        args: Sequence[Any] = (),
        timeout: float | None = None,
    ) -> Any:
        """Invoke module.function on the other side and wait for its result.

        Args:
            module: Remote module name
            function: Remote function name
            args: Positional arguments (JSON serializable)
            timeout: Deadline in seconds (default: options.call_timeout)

        Returns:
            The value returned by the remote function

        Raises:
            ProtocolViolationError: If the request shape is invalid (nothing is sent)
            RemoteError: If the remote function raised
            CallTimeoutError: If no response arrived before the deadline
            TransportClosedError: If the worker went away while waiting
            SessionClosedError: If the session is stopped
        """
        call_args = _validate_request(module, function, args)
        if timeout is None:
            timeout = self._options.call_timeout
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._ensure_running()

        request_id = self._allocate_id()
        envelope = CallEnvelope(id=request_id, module=module, function=function, args=call_args)
        future: asyncio.Future[Any] = self._loop.create_future()
        self._table.register(request_id, future, timeout, target=envelope.target)
        logger.debug(f"Call {request_id}: {envelope.target} (timeout={timeout}s)")

        # The deadline also bounds the write: a peer that stops reading must
        # not hold the caller past it
        sending = asyncio.create_task(
            self._transport.send(envelope), name=f"procbridge-send-{request_id}"
        )
        try:
            await asyncio.wait({sending, future}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            sending.cancel()
            sending.add_done_callback(_consume_send_outcome)
            self._table.discard(request_id)
            raise

        if not sending.done():
            sending.cancel()
            sending.add_done_callback(_consume_send_outcome)
        elif sending.exception() is not None:
            self._table.discard(request_id)
            if future.done() and not future.cancelled():
                future.exception()
            future.cancel()
            raise sending.exception()

        try:
            result = await future
        except asyncio.CancelledError:
            self._table.discard(request_id)
            raise

        if isinstance(result, Failure):
            raise RemoteError(result.category, result.reason, result.trace)
        return result.value

    async def cast(self, module: str, function: str, args: Sequence[Any] = ()) -> None:
        """Invoke module.function on the other side without waiting.

        Raises:
            ProtocolViolationError: If the request shape is invalid (nothing is sent)
            SessionClosedError: If the session is stopped
        """
        cast_args = _validate_request(module, function, args)
        self._ensure_running()
        await self._transport.send(NotifyEnvelope(module=module, function=function, args=cast_args))

    def call_from_thread(
        self,
        module: str,
        function: str,
        args: Sequence[Any] = (),
        timeout: float | None = None,
    ) -> Any:
        """Blocking call() for code running on another thread.

        Threaded handlers use this to call back across the bridge.

        Raises:
            RuntimeError: If called from the session's own event loop thread
        """
        self._check_foreign_thread("call_from_thread")
        future = asyncio.run_coroutine_threadsafe(
            self.call(module, function, args, timeout), self._loop
        )
        return future.result()

    def cast_from_thread(self, module: str, function: str, args: Sequence[Any] = ()) -> None:
        """Blocking cast() for code running on another thread."""
        self._check_foreign_thread("cast_from_thread")
        asyncio.run_coroutine_threadsafe(self.cast(module, function, args), self._loop).result()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Stop the session and release the worker.

        Waits (bounded by options.shutdown_timeout) for running inbound
        invocations so their responses are written, fails every pending
        outbound call with SessionClosedError, then closes the transport.
        Calling stop() again, or after the transport was lost, just waits
        for the session to be closed.
        """
        if self._state is not SessionState.RUNNING:
            await self._closed.wait()
            return

        self._state = SessionState.STOPPING
        logger.info(f"Stopping session {self._name}")

        await self._dispatcher.drain(self._options.shutdown_timeout)
        failed = self._table.fail_all(SessionClosedError(f"Session {self._name} stopped"))
        if failed:
            logger.info(f"Failed {failed} pending call(s) on stop")

        await self._transport.close()
        self._reader_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._reader_task
        self._mark_closed()

    async def wait_closed(self) -> None:
        """Wait until the session has ended, for whatever reason."""
        await self._closed.wait()

    async def __aenter__(self) -> BridgeSession:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_running(self) -> None:
        if self._state is not SessionState.RUNNING:
            raise SessionClosedError(f"Session {self._name} is {self._state.value}")

    def _check_foreign_thread(self, method: str) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            raise RuntimeError(
                f"{method}() would block the session's own event loop; await instead"
            )

    def _allocate_id(self) -> int:
        """Next id in sequence, skipping ids still outstanding after wraparound."""
        while True:
            request_id = self._next_id
            self._next_id = (self._next_id + 1) % ID_SPACE
            if request_id not in self._table:
                return request_id

    def _route(self, envelope: CallEnvelope | NotifyEnvelope | ResponseEnvelope) -> None:
        if isinstance(envelope, ResponseEnvelope):
            if not self._table.resolve(envelope.id, envelope.result):
                # Normal when a deadline beat the response
                logger.debug(f"Discarding response for unknown or expired call {envelope.id}")
            return

        if self._state is not SessionState.RUNNING:
            stopping = SessionClosedError(f"Session {self._name} is stopping")
            self._dispatcher.reject(envelope, stopping)
            return
        self._dispatcher.dispatch(envelope)

    async def _read_loop(self) -> None:
        """Background task reading envelopes and routing them."""
        error: TransportClosedError
        try:
            while True:
                try:
                    envelope = await self._transport.receive()
                except MalformedFrameError as e:
                    logger.warning(f"Dropping malformed frame: {e}")
                    continue
                if envelope is None:
                    error = TransportClosedError("Peer closed the connection")
                    break
                self._route(envelope)
        except TransportClosedError as e:
            error = e

        if self._state is SessionState.RUNNING:
            self._state = SessionState.STOPPING
            failed = self._table.fail_all(error)
            logger.warning(
                f"Session {self._name} lost its transport: {error} "
                f"({failed} pending call(s) failed)"
            )
            self._release_task = asyncio.create_task(self._release())

    async def _release(self) -> None:
        """Clean up after the transport was lost."""
        await self._dispatcher.drain(self._options.shutdown_timeout)
        await self._transport.close()
        self._mark_closed()

    def _mark_closed(self) -> None:
        self._state = SessionState.CLOSED
        self._closed.set()
        logger.info(f"Session {self._name} closed")
