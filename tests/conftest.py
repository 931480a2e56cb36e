"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from procbridge.transport.base import FrameTransport

FIXTURES_DIR = Path(__file__).parent / "fixtures"


class MemoryWriter:
    """StreamWriter stand-in that feeds bytes straight into a peer reader."""

    def __init__(self, peer: asyncio.StreamReader) -> None:
        self._peer = peer
        self._closing = False
        self.bytes_written = 0

    def write(self, data: bytes) -> None:
        if self._closing:
            raise ConnectionResetError("writer closed")
        self.bytes_written += len(data)
        self._peer.feed_data(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def close(self) -> None:
        if not self._closing:
            self._closing = True
            self._peer.feed_eof()

    def is_closing(self) -> bool:
        return self._closing

    async def wait_closed(self) -> None:
        return None


def make_transport_pair(packet: int = 4) -> tuple[FrameTransport, FrameTransport]:
    """Two in-memory transports wired to each other. Call inside a running loop."""
    left_reader = asyncio.StreamReader()
    right_reader = asyncio.StreamReader()
    left = FrameTransport(left_reader, MemoryWriter(right_reader), packet)
    right = FrameTransport(right_reader, MemoryWriter(left_reader), packet)
    return left, right


@pytest.fixture(scope="module")
def anyio_backend():
    """Configure anyio to use asyncio backend."""
    return "asyncio"


@pytest.fixture
def transport_pair() -> Callable[..., tuple[FrameTransport, FrameTransport]]:
    """Factory for connected in-memory transports."""
    return make_transport_pair


@pytest.fixture
def fixtures_path() -> str:
    """Module search path holding the worker-side test functions."""
    return str(FIXTURES_DIR)
