"""
Signaling channel: typed frames and the relay transport.
"""

from __future__ import annotations

from . import messages
from .messages import SignalMessage, parse_message
from .transport import SignalingChannel, SignalingTransport

__all__ = [
    "SignalMessage",
    "SignalingChannel",
    "SignalingTransport",
    "messages",
    "parse_message",
]
