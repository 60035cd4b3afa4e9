"""
Error hierarchy shared by the session engine components.
"""

from __future__ import annotations


class LivestageError(RuntimeError):
    """Base class for session engine errors."""


class TransportError(LivestageError):
    """Raised when the signaling transport cannot reach the relay."""


class TransportAuthError(TransportError):
    """Raised when the relay rejects the auth token.  Ends the session."""


class NegotiationError(LivestageError):
    """Raised when a single peer link fails to negotiate."""


class MutationTimeout(LivestageError):
    """Raised when a collection mutation is not confirmed in time."""

    retryable = True

    def __init__(self, action: str, request_id: str, timeout: float) -> None:
        super().__init__(f"{action} not confirmed within {timeout:.1f}s (request {request_id})")
        self.action = action
        self.request_id = request_id
        self.timeout = timeout


class MediaAcquisitionError(LivestageError):
    """Raised when a camera, microphone or display source cannot be opened."""


class UploadError(LivestageError):
    """Raised when the recording upload collaborator fails."""
