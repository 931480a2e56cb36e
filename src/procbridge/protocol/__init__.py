"""Wire protocol layer.

Defines the envelope shapes exchanged between host and worker and the
codec that frames them on the byte stream.

Key concepts:
- Call: synchronous request with an id for correlation
- Notify: fire-and-forget request
- Response: answer to a Call, matched by id only
- Result: Success(value) or Failure(category, reason, trace)
"""

from .codec import PACKET_WIDTHS, decode, encode, max_payload_size, pack_frame, read_frame
from .envelopes import (
    CallEnvelope,
    Envelope,
    Failure,
    NotifyEnvelope,
    ResponseEnvelope,
    Result,
    Success,
)

__all__ = [
    "CallEnvelope",
    "Envelope",
    "Failure",
    "NotifyEnvelope",
    "ResponseEnvelope",
    "Result",
    "Success",
    "PACKET_WIDTHS",
    "decode",
    "encode",
    "max_payload_size",
    "pack_frame",
    "read_frame",
]
