"""
Development relay for local sessions and tests.
"""

from .server import RelayConnection, RelayManager, Room, create_app

__all__ = ["RelayConnection", "RelayManager", "Room", "create_app"]
