"""procbridge - bidirectional RPC bridge to a worker subprocess.

The host launches one long-lived worker and calls functions in it, either
waiting for the result (call) or not (cast). The worker can call back into
functions the host exposes in a registry the same way.

Usage:
    from procbridge import BridgeOptions, FunctionRegistry, open_session

    registry = FunctionRegistry()
    registry.register("host", "double", lambda x: x * 2)

    async with open_session(BridgeOptions(packet=4), registry=registry) as session:
        assert await session.call("operator", "add", [2, 3]) == 5
"""

from .api import call, cast, open_session, start, stop
from .config import BridgeOptions
from .correlation import CorrelationTable, PendingRequest
from .dispatcher import Dispatcher, current_session
from .errors import (
    BridgeError,
    BridgeStartError,
    CallTimeoutError,
    EncodeError,
    FrameTooLargeError,
    MalformedFrameError,
    ProtocolViolationError,
    RemoteError,
    SessionClosedError,
    TransportClosedError,
    UnknownFunctionError,
)
from .registry import FunctionRegistry, ModuleRegistry, Registry
from .session import BridgeSession, SessionState

__all__ = [
    # Public API
    "start",
    "stop",
    "call",
    "cast",
    "open_session",
    "current_session",
    # Session
    "BridgeOptions",
    "BridgeSession",
    "SessionState",
    "CorrelationTable",
    "PendingRequest",
    "Dispatcher",
    # Registries
    "FunctionRegistry",
    "ModuleRegistry",
    "Registry",
    # Errors
    "BridgeError",
    "BridgeStartError",
    "CallTimeoutError",
    "EncodeError",
    "FrameTooLargeError",
    "MalformedFrameError",
    "ProtocolViolationError",
    "RemoteError",
    "SessionClosedError",
    "TransportClosedError",
    "UnknownFunctionError",
]
