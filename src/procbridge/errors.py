"""Exception types raised by the bridge.

Every error derives from BridgeError so callers can catch the whole family.
Several also derive from the matching builtin (TimeoutError, ConnectionError,
ValueError) so generic handlers keep working.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge errors."""


class BridgeStartError(BridgeError):
    """Raised when the worker subprocess cannot be launched."""


class ProtocolViolationError(BridgeError):
    """Raised for a request shape the bridge refuses to send or execute."""


class UnknownFunctionError(ProtocolViolationError):
    """Raised when a module/function pair is not exposed by a registry."""

    def __init__(self, module: str, function: str) -> None:
        self.module = module
        self.function = function
        super().__init__(f"Unknown function: {module}.{function}")


class MalformedFrameError(BridgeError):
    """Raised when an inbound frame cannot be decoded into an envelope."""


class EncodeError(BridgeError, ValueError):
    """Raised when an envelope or one of its values cannot be serialized."""


class FrameTooLargeError(BridgeError, ValueError):
    """Raised when a payload does not fit the configured length field."""


class CallTimeoutError(BridgeError, TimeoutError):
    """Raised when no response arrives before a call's deadline."""

    def __init__(self, request_id: int, timeout: float) -> None:
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(f"Call {request_id} timed out after {timeout}s")


class RemoteError(BridgeError):
    """Raised when the remote side reports a failure for a call.

    Attributes:
        category: Exception class name reported by the remote side
        reason: Exception message reported by the remote side
        trace: Formatted remote traceback
    """

    def __init__(self, category: str, reason: str, trace: str = "") -> None:
        self.category = category
        self.reason = reason
        self.trace = trace
        message = f"Remote side raised {category}: {reason}"
        if trace:
            message += f"\nRemote traceback:\n{trace}"
        super().__init__(message)


class TransportClosedError(BridgeError, ConnectionError):
    """Raised when the worker exits or its pipes fail."""


class SessionClosedError(BridgeError):
    """Raised when a session has been stopped."""
