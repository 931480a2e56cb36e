"""Envelope codec and length-prefixed framing.

Wire format:

    [ length : 1, 2 or 4 bytes, big-endian unsigned ] [ payload : length bytes ]

The payload is the UTF-8 JSON form of one envelope model. The width of the
length field is fixed for the lifetime of a session and both ends must agree
on it (the worker receives it on its command line).
"""

from __future__ import annotations

import asyncio
import logging
import struct

from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError

from ..errors import EncodeError, FrameTooLargeError, MalformedFrameError, TransportClosedError
from .envelopes import CallEnvelope, Envelope, NotifyEnvelope, ResponseEnvelope

logger = logging.getLogger(__name__)

PACKET_WIDTHS = (1, 2, 4)

_HEADERS: dict[int, struct.Struct] = {
    1: struct.Struct(">B"),
    2: struct.Struct(">H"),
    4: struct.Struct(">I"),
}

_ENVELOPE_ADAPTER: TypeAdapter[CallEnvelope | NotifyEnvelope | ResponseEnvelope] = TypeAdapter(
    Envelope
)


def _header(width: int) -> struct.Struct:
    try:
        return _HEADERS[width]
    except KeyError:
        raise ValueError(f"Packet width must be one of {PACKET_WIDTHS}, got {width}") from None


def max_payload_size(width: int) -> int:
    """Largest payload a length field of `width` bytes can describe."""
    _header(width)
    return (1 << (8 * width)) - 1


def encode(envelope: CallEnvelope | NotifyEnvelope | ResponseEnvelope) -> bytes:
    """Serialize an envelope to its JSON payload.

    Raises:
        EncodeError: If a carried value is not JSON serializable
    """
    try:
        return envelope.model_dump_json().encode("utf-8")
    except PydanticSerializationError as e:
        raise EncodeError(f"Cannot encode {envelope.tag} envelope: {e}") from e


def decode(payload: bytes) -> CallEnvelope | NotifyEnvelope | ResponseEnvelope:
    """Parse a JSON payload into one of the envelope models.

    Raises:
        MalformedFrameError: If the payload is not a valid envelope
    """
    try:
        return _ENVELOPE_ADAPTER.validate_json(payload)
    except ValidationError as e:
        raise MalformedFrameError(f"Invalid envelope: {e.error_count()} error(s): {e}") from e


def pack_frame(payload: bytes, width: int) -> bytes:
    """Prefix a payload with its length."""
    header = _header(width)
    if len(payload) > max_payload_size(width):
        raise FrameTooLargeError(
            f"Payload of {len(payload)} bytes exceeds the {width}-byte length field"
        )
    return header.pack(len(payload)) + payload


async def read_frame(reader: asyncio.StreamReader, width: int) -> bytes | None:
    """Read one complete frame payload.

    Returns:
        The payload bytes, or None on a clean end of stream between frames

    Raises:
        TransportClosedError: If the stream ends inside a frame
    """
    header = _header(width)
    try:
        raw_length = await reader.readexactly(width)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise TransportClosedError("Stream closed inside a frame header") from e

    (length,) = header.unpack(raw_length)
    try:
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise TransportClosedError(
            f"Stream closed after {len(e.partial)} of {length} payload bytes"
        ) from e
