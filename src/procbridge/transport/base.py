"""Framed transport over an asyncio byte stream.

FrameTransport turns a (reader, writer) stream pair into a channel of
envelopes:
- send() encodes, frames and writes one envelope; writes from concurrent
  tasks are serialized by a lock so frames never interleave
- receive() reads and decodes one envelope; a payload that does not decode
  raises MalformedFrameError but leaves the stream usable
- close() closes the writing side, which the peer observes as end of input
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from ..errors import TransportClosedError
from ..protocol.codec import decode, encode, pack_frame, read_frame
from ..protocol.envelopes import CallEnvelope, NotifyEnvelope, ResponseEnvelope

logger = logging.getLogger(__name__)

AnyEnvelope = CallEnvelope | NotifyEnvelope | ResponseEnvelope


class FrameTransport:
    """Length-prefixed envelope transport over a stream pair.

    Args:
        reader: Stream the peer's frames arrive on
        writer: Stream our frames are written to (StreamWriter-like)
        packet: Width of the frame length field (1, 2 or 4)
        read_transport: Optional pipe transport to close along with the writer
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: Any,
        packet: int = 4,
        read_transport: asyncio.BaseTransport | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._packet = packet
        self._read_transport = read_transport
        self._write_lock = asyncio.Lock()
        self._closed = False

    @property
    def packet(self) -> int:
        """Width of the frame length field."""
        return self._packet

    @property
    def is_closed(self) -> bool:
        """True once close() has been called."""
        return self._closed

    async def send(self, envelope: AnyEnvelope) -> None:
        """Encode and write one envelope as a single frame.

        Raises:
            EncodeError: If the envelope carries an unserializable value
            FrameTooLargeError: If the payload exceeds the length field
            TransportClosedError: If the stream is closed or broken
        """
        frame = pack_frame(encode(envelope), self._packet)

        async with self._write_lock:
            if self._closed or self._writer.is_closing():
                raise TransportClosedError("Transport is closed")
            try:
                self._writer.write(frame)
                await self._writer.drain()
            except (ConnectionError, OSError) as e:
                raise TransportClosedError(f"Write failed: {e}") from e

    async def receive(self) -> AnyEnvelope | None:
        """Read and decode the next envelope.

        Returns:
            The envelope, or None when the peer closed the stream

        Raises:
            MalformedFrameError: If the frame payload is not a valid envelope
            TransportClosedError: If the stream ends inside a frame
        """
        try:
            payload = await read_frame(self._reader, self._packet)
        except (ConnectionError, OSError) as e:
            raise TransportClosedError(f"Read failed: {e}") from e
        if payload is None:
            return None
        return decode(payload)

    async def close(self) -> None:
        """Close the writing side of the stream."""
        if self._closed:
            return
        self._closed = True

        self._writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await self._writer.wait_closed()

        if self._read_transport is not None:
            self._read_transport.close()
