"""Tests for envelope models, payload codec and framing."""

from __future__ import annotations

import asyncio
import json

import pytest

from procbridge.errors import (
    EncodeError,
    FrameTooLargeError,
    MalformedFrameError,
    TransportClosedError,
)
from procbridge.protocol import (
    CallEnvelope,
    Failure,
    NotifyEnvelope,
    ResponseEnvelope,
    Success,
    decode,
    encode,
    max_payload_size,
    pack_frame,
    read_frame,
)

# =============================================================================
# Envelope models
# =============================================================================


class TestEnvelopes:
    """Tests for the three envelope shapes."""

    def test_tags(self) -> None:
        """Each shape carries its wire tag."""
        assert CallEnvelope(id=0, module="m", function="f").tag == "S"
        assert NotifyEnvelope(module="m", function="f").tag == "A"
        assert ResponseEnvelope.success(0, None).tag == "R"

    def test_call_target(self) -> None:
        """Target joins module and function."""
        envelope = CallEnvelope(id=3, module="math", function="add", args=[2, 3])
        assert envelope.target == "math.add"

    def test_negative_id_rejected(self) -> None:
        """Ids are unsigned."""
        with pytest.raises(ValueError):
            CallEnvelope(id=-1, module="m", function="f")

    def test_failure_from_exception(self) -> None:
        """Failures carry category, reason and trace."""
        try:
            1 / 0
        except ZeroDivisionError as e:
            failure = Failure.from_exception(e)

        assert failure.status == "error"
        assert failure.category == "ZeroDivisionError"
        assert failure.reason == "division by zero"
        assert "Traceback" in failure.trace
        assert "ZeroDivisionError" in failure.trace

    def test_response_factories(self) -> None:
        """success() and failure() build the matching Result variant."""
        ok = ResponseEnvelope.success(7, {"a": 1})
        assert isinstance(ok.result, Success)
        assert ok.result.value == {"a": 1}

        err = ResponseEnvelope.failure(8, KeyError("missing"))
        assert isinstance(err.result, Failure)
        assert err.result.category == "KeyError"
        assert err.id == 8


# =============================================================================
# Payload codec
# =============================================================================


class TestPayloadCodec:
    """Tests for encode/decode of envelope payloads."""

    def test_call_wire_shape(self) -> None:
        """A Call encodes to the documented JSON object."""
        payload = encode(CallEnvelope(id=0, module="math", function="add", args=[2, 3]))
        assert json.loads(payload) == {
            "tag": "S",
            "id": 0,
            "module": "math",
            "function": "add",
            "args": [2, 3],
        }

    def test_decode_dispatches_on_tag(self) -> None:
        """Decoding picks the model from the tag."""
        call = decode(b'{"tag": "S", "id": 1, "module": "m", "function": "f", "args": []}')
        notify = decode(b'{"tag": "A", "module": "m", "function": "f", "args": [1]}')
        response = decode(b'{"tag": "R", "id": 1, "result": {"status": "ok", "value": 5}}')

        assert isinstance(call, CallEnvelope)
        assert isinstance(notify, NotifyEnvelope)
        assert isinstance(response, ResponseEnvelope)
        assert response.result == Success(value=5)

    def test_decode_failure_result(self) -> None:
        """Failure results decode with all their fields."""
        payload = (
            b'{"tag": "R", "id": 2, "result": {"status": "error", "category": "ValueError",'
            b' "reason": "bad", "trace": "tb"}}'
        )
        response = decode(payload)
        assert response.result == Failure(category="ValueError", reason="bad", trace="tb")

    @pytest.mark.parametrize(
        "payload",
        [
            b"not json",
            b"\xff\xfe",
            b"{}",
            b'{"tag": "X", "id": 1}',
            b'{"tag": "S", "module": "m", "function": "f"}',
            b'{"tag": "R", "id": 1, "result": {"status": "maybe"}}',
        ],
    )
    def test_decode_malformed(self, payload: bytes) -> None:
        """Anything that is not a valid envelope is a malformed frame."""
        with pytest.raises(MalformedFrameError):
            decode(payload)

    def test_encode_unserializable_value(self) -> None:
        """Values JSON cannot carry raise EncodeError."""
        with pytest.raises(EncodeError):
            encode(ResponseEnvelope.success(1, object()))


# =============================================================================
# Framing
# =============================================================================


class TestFraming:
    """Tests for the length prefix."""

    @pytest.mark.parametrize(
        ("width", "header"),
        [(1, b"\x03"), (2, b"\x00\x03"), (4, b"\x00\x00\x00\x03")],
    )
    def test_big_endian_header(self, width: int, header: bytes) -> None:
        """The length is a big-endian unsigned integer of the configured width."""
        assert pack_frame(b"abc", width) == header + b"abc"

    def test_max_payload_size(self) -> None:
        assert max_payload_size(1) == 255
        assert max_payload_size(2) == 65535
        assert max_payload_size(4) == 2**32 - 1

    def test_payload_too_large(self) -> None:
        """A payload longer than the length field allows is refused."""
        pack_frame(b"x" * 255, 1)
        with pytest.raises(FrameTooLargeError):
            pack_frame(b"x" * 256, 1)

    def test_invalid_width(self) -> None:
        with pytest.raises(ValueError):
            pack_frame(b"", 3)

    @pytest.mark.anyio
    async def test_read_frames_in_sequence(self) -> None:
        """Frames split across chunks are reassembled in order."""
        reader = asyncio.StreamReader()
        data = pack_frame(b"first", 2) + pack_frame(b"second", 2)
        reader.feed_data(data[:3])
        reader.feed_data(data[3:])
        reader.feed_eof()

        assert await read_frame(reader, 2) == b"first"
        assert await read_frame(reader, 2) == b"second"
        assert await read_frame(reader, 2) is None

    @pytest.mark.anyio
    async def test_eof_inside_header(self) -> None:
        reader = asyncio.StreamReader()
        reader.feed_data(b"\x00\x00")
        reader.feed_eof()

        with pytest.raises(TransportClosedError):
            await read_frame(reader, 4)

    @pytest.mark.anyio
    async def test_eof_inside_payload(self) -> None:
        reader = asyncio.StreamReader()
        reader.feed_data(b"\x05abc")
        reader.feed_eof()

        with pytest.raises(TransportClosedError):
            await read_frame(reader, 1)
