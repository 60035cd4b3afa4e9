"""
Peer mesh: ICE settings, local media ownership, links and the coordinator.
"""

from .ice import IceSettings
from .media import GatedTrack, LocalMedia, RemoteStream
from .mesh import MeshCoordinator
from .peer_link import LinkState, PeerLink

__all__ = [
    "GatedTrack",
    "IceSettings",
    "LinkState",
    "LocalMedia",
    "MeshCoordinator",
    "PeerLink",
    "RemoteStream",
]
