"""Tests for the correlation table."""

from __future__ import annotations

import asyncio

import pytest

from procbridge.correlation import CorrelationTable
from procbridge.errors import CallTimeoutError, TransportClosedError
from procbridge.protocol.envelopes import Failure, Success


def new_future() -> asyncio.Future:
    return asyncio.get_running_loop().create_future()


class TestRegister:
    """Tests for registering pending calls."""

    @pytest.mark.anyio
    async def test_register_tracks_id(self) -> None:
        table = CorrelationTable()
        table.register(0, new_future(), timeout=10)

        assert 0 in table
        assert len(table) == 1
        assert table.ids() == [0]

    @pytest.mark.anyio
    async def test_duplicate_id_rejected(self) -> None:
        table = CorrelationTable()
        table.register(1, new_future(), timeout=10)

        with pytest.raises(ValueError):
            table.register(1, new_future(), timeout=10)

    @pytest.mark.anyio
    async def test_ids_sorted(self) -> None:
        table = CorrelationTable()
        for request_id in (5, 2, 9):
            table.register(request_id, new_future(), timeout=10)
        assert table.ids() == [2, 5, 9]


class TestResolution:
    """Tests for resolve/expire exclusivity."""

    @pytest.mark.anyio
    async def test_resolve_completes_future(self) -> None:
        table = CorrelationTable()
        future = new_future()
        timer = table.register(0, future, timeout=10)

        assert table.resolve(0, Success(value=5)) is True
        assert await future == Success(value=5)
        assert 0 not in table
        assert timer.cancelled()

    @pytest.mark.anyio
    async def test_resolve_unknown_id(self) -> None:
        table = CorrelationTable()
        assert table.resolve(42, Success(value=None)) is False

    @pytest.mark.anyio
    async def test_resolve_carries_failure(self) -> None:
        table = CorrelationTable()
        future = new_future()
        table.register(0, future, timeout=10)

        failure = Failure(category="ValueError", reason="bad")
        table.resolve(0, failure)
        assert await future == failure

    @pytest.mark.anyio
    async def test_deadline_expires_call(self) -> None:
        """An unanswered call fails with CallTimeoutError and leaves the table."""
        table = CorrelationTable()
        future = new_future()
        table.register(3, future, timeout=0.01)

        with pytest.raises(CallTimeoutError) as exc_info:
            await future
        assert exc_info.value.request_id == 3
        assert 3 not in table

    @pytest.mark.anyio
    async def test_late_response_after_expiry_is_ignored(self) -> None:
        """Whichever of expire/resolve runs first wins; the other is a no-op."""
        table = CorrelationTable()
        future = new_future()
        table.register(0, future, timeout=10)

        assert table.expire(0) is True
        assert table.resolve(0, Success(value=1)) is False
        with pytest.raises(CallTimeoutError):
            await future

    @pytest.mark.anyio
    async def test_expire_after_resolve_is_ignored(self) -> None:
        table = CorrelationTable()
        future = new_future()
        table.register(0, future, timeout=10)

        assert table.resolve(0, Success(value=1)) is True
        assert table.expire(0) is False
        assert (await future).value == 1

    @pytest.mark.anyio
    async def test_late_response_does_not_touch_other_calls(self) -> None:
        table = CorrelationTable()
        expired, alive = new_future(), new_future()
        table.register(0, expired, timeout=10)
        table.register(1, alive, timeout=10)

        table.expire(0)
        table.resolve(0, Success(value="late"))

        assert table.ids() == [1]
        assert not alive.done()
        table.discard(1)

    @pytest.mark.anyio
    async def test_cancelled_future_not_set(self) -> None:
        """A caller that went away does not break resolution."""
        table = CorrelationTable()
        future = new_future()
        table.register(0, future, timeout=10)
        future.cancel()

        assert table.resolve(0, Success(value=1)) is True


class TestBulkOperations:
    """Tests for discard and fail_all."""

    @pytest.mark.anyio
    async def test_discard(self) -> None:
        table = CorrelationTable()
        future = new_future()
        timer = table.register(0, future, timeout=10)

        assert table.discard(0) is True
        assert table.discard(0) is False
        assert timer.cancelled()
        assert not future.done()

    @pytest.mark.anyio
    async def test_fail_all(self) -> None:
        table = CorrelationTable()
        futures = [new_future() for _ in range(3)]
        for request_id, future in enumerate(futures):
            table.register(request_id, future, timeout=10)

        assert table.fail_all(TransportClosedError("gone")) == 3
        assert len(table) == 0
        for future in futures:
            with pytest.raises(TransportClosedError):
                await future

    @pytest.mark.anyio
    async def test_fail_all_gives_each_call_its_own_error(self) -> None:
        """Waiters raising the failure never share one exception instance."""
        table = CorrelationTable()
        futures = [new_future() for _ in range(3)]
        for request_id, future in enumerate(futures):
            table.register(request_id, future, timeout=10)

        cause = OSError("broken pipe")
        error = TransportClosedError("gone")
        error.__cause__ = cause
        table.fail_all(error)

        raised = [future.exception() for future in futures]
        assert len({id(exc) for exc in raised}) == 3
        assert all(exc is not error for exc in raised)
        for exc in raised:
            assert type(exc) is TransportClosedError
            assert exc.args == ("gone",)
            assert exc.__cause__ is cause
