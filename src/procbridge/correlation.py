"""Correlation table for outstanding outbound calls.

Maps a request id to the caller's future and its armed deadline. All
methods must run on the session's event loop thread: deadlines fire as loop
callbacks and responses are routed by the loop's reader task, so resolve()
and expire() can never interleave. Each pops the entry before touching the
future, which makes the first of them to run the only one that resolves it.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass

from .errors import CallTimeoutError
from .protocol.envelopes import Failure, Success

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """An outbound call waiting for its response."""

    request_id: int
    future: asyncio.Future[Success | Failure]
    timer: asyncio.TimerHandle
    timeout: float
    target: str | None = None


class CorrelationTable:
    """Outstanding calls indexed by request id."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._pending: dict[int, PendingRequest] = {}

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def ids(self) -> list[int]:
        """Ids of all outstanding calls, ascending."""
        return sorted(self._pending)

    def register(
        self,
        request_id: int,
        future: asyncio.Future[Success | Failure],
        timeout: float,
        target: str | None = None,
    ) -> asyncio.TimerHandle:
        """Track a call and arm its deadline.

        Raises:
            ValueError: If the id is already outstanding
        """
        if request_id in self._pending:
            raise ValueError(f"Request id {request_id} is already outstanding")
        timer = self._loop.call_later(timeout, self.expire, request_id)
        self._pending[request_id] = PendingRequest(
            request_id=request_id,
            future=future,
            timer=timer,
            timeout=timeout,
            target=target,
        )
        return timer

    def resolve(self, request_id: int, result: Success | Failure) -> bool:
        """Complete a call with the result carried by its response.

        Returns:
            True if the call was outstanding, False if it was unknown or had
            already been resolved (for example by its deadline)
        """
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        pending.timer.cancel()
        if not pending.future.done():
            pending.future.set_result(result)
        return True

    def expire(self, request_id: int) -> bool:
        """Fail a call whose deadline elapsed.

        Returns:
            True if the call was outstanding, False otherwise
        """
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        pending.timer.cancel()
        if not pending.future.done():
            pending.future.set_exception(CallTimeoutError(request_id, pending.timeout))
        logger.debug(f"Call {request_id} ({pending.target}) expired after {pending.timeout}s")
        return True

    def discard(self, request_id: int) -> bool:
        """Forget a call without resolving it (its caller has gone away)."""
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        pending.timer.cancel()
        return True

    def fail_all(self, exc: BaseException) -> int:
        """Fail every outstanding call with a copy of `exc`.

        Each future gets its own instance (`exc` must be copyable), so tracebacks
        added as one waiter raises never show up in another's.

        Returns:
            Number of calls that were failed
        """
        pending_requests = list(self._pending.values())
        self._pending.clear()
        for pending in pending_requests:
            pending.timer.cancel()
            if not pending.future.done():
                error = copy.copy(exc)
                error.__cause__ = exc.__cause__
                pending.future.set_exception(error)
        return len(pending_requests)
