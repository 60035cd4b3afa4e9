"""
Live chat collection.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from ..api_client import RestClient
from ..models import ChatMessage, parse_reactions
from ..signaling import messages
from ..signaling.transport import SignalingChannel
from .base import DEFAULT_TIMEOUT, Mutation, SyncedCollection


class ChatCollection(SyncedCollection):
    """Append-only message list, deduplicated by message id."""

    CONFIRMATIONS = (messages.MessageSent,)

    def __init__(
        self,
        channel: SignalingChannel,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        api: Optional[RestClient] = None,
        page_size: int = 50,
    ) -> None:
        super().__init__(channel, timeout=timeout)
        self.api = api
        self.page_size = page_size
        self.messages: List[ChatMessage] = []
        self.page = 0
        self.has_more = False

    def push_handlers(self):
        return (
            (messages.NewMessage, self._on_new_message),
            (messages.MessageDeleted, self._on_message_deleted),
            (messages.MessageReactionAdded, self._on_reaction_added),
        )

    # ------------------------------------------------------------------ queries

    def get(self, message_id: str) -> Optional[ChatMessage]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    # ------------------------------------------------------------------ mutations

    async def send_message(self, content: str) -> Mutation:
        content = content.strip()
        if not content:
            raise ValueError("message content is empty")
        return await self.submit(messages.SendMessage(session_id=self.session_id, content=content))

    async def delete_message(self, message_id: str) -> Mutation:
        return await self.submit(
            messages.DeleteMessage(session_id=self.session_id, message_id=message_id)
        )

    # ------------------------------------------------------------------ history

    async def load_history(self, page: int = 1) -> List[ChatMessage]:
        """Fetch one history page and merge it by id."""

        if self.api is None:
            raise RuntimeError("chat history needs a REST client")
        result = await self.api.fetch_chat_history(self.session_id, page=page, limit=self.page_size)
        self._merge(result.messages)
        self.page = result.page
        self.has_more = result.has_more
        return result.messages

    async def load_more(self) -> List[ChatMessage]:
        if not self.has_more:
            return []
        return await self.load_history(self.page + 1)

    def _merge(self, incoming: List[ChatMessage]) -> None:
        known: Dict[str, ChatMessage] = {message.id: message for message in self.messages}
        for message in incoming:
            known.setdefault(message.id, message)
        self.messages = sorted(known.values(), key=lambda item: item.timestamp)

    # ------------------------------------------------------------------ push events

    def _on_new_message(self, message: messages.NewMessage) -> None:
        if self.get(message.id) is not None:
            return
        self.messages.append(ChatMessage.from_payload(message.to_wire()))

    def _on_message_deleted(self, message: messages.MessageDeleted) -> None:
        self.messages = [item for item in self.messages if item.id != message.message_id]

    def _on_reaction_added(self, message: messages.MessageReactionAdded) -> None:
        target = self.get(message.message_id)
        if target is not None:
            target.reactions = parse_reactions(message.reactions) or []
