"""
Hub-synchronised collections: chat, Q&A and polls.
"""

from .base import Mutation, MutationState, SyncedCollection
from .chat import ChatCollection
from .polls import PollCollection
from .qa import QACollection

__all__ = [
    "ChatCollection",
    "Mutation",
    "MutationState",
    "PollCollection",
    "QACollection",
    "SyncedCollection",
]
