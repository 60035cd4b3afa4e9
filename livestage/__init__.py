"""
livestage real-time session engine.

The package hosts the headless participant client for live events: a
signaling transport, a peer-to-peer media mesh negotiated over it, chunked
file transfer, synchronized chat/poll/Q&A collections and a capture and
composite recording pipeline.  :class:`livestage.session.SessionEngine` ties
the pieces together for one session.
"""

from __future__ import annotations

from .config import EngineConfig

__all__ = [
    "EngineConfig",
]

__version__ = "0.3.0"
