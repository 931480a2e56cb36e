"""Transport layer.

Moves framed envelopes between the two ends of the bridge:
- FrameTransport - framing over any asyncio stream pair
- SubprocessTransport - owns the worker process and its pipes
- connect_pipes - asyncio streams over raw pipe file objects
"""

from .base import FrameTransport
from .pipes import connect_pipes
from .process import SubprocessTransport

__all__ = [
    "FrameTransport",
    "SubprocessTransport",
    "connect_pipes",
]
