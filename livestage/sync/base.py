"""
Acknowledged mutations for hub-synchronised collections.

A mutation is sent with a fresh ``requestId`` and stays ``PENDING`` until
the hub echoes that id on a confirmation frame, or until the timeout turns
it ``TIMED_OUT``.  Local records are only ever created from push events, so
retrying a timed-out mutation cannot duplicate a record.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type

from ..errors import MutationTimeout
from ..signaling.messages import SignalMessage
from ..signaling.transport import SignalingChannel

LOG = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


class MutationState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed-out"


class Mutation:
    """Caller-visible handle for one in-flight mutation."""

    def __init__(self, action: str, request_id: str, timeout: float) -> None:
        self.action = action
        self.request_id = request_id
        self.timeout = timeout
        self.state = MutationState.PENDING
        self.confirmation: Optional[SignalMessage] = None
        self._settled = asyncio.Event()

    @classmethod
    def already_confirmed(cls, action: str) -> "Mutation":
        mutation = cls(action, "", 0.0)
        mutation.state = MutationState.CONFIRMED
        mutation._settled.set()
        return mutation

    @property
    def pending(self) -> bool:
        return self.state is MutationState.PENDING

    def confirm(self, message: SignalMessage) -> None:
        if not self.pending:
            return
        self.state = MutationState.CONFIRMED
        self.confirmation = message
        self._settled.set()

    def expire(self) -> None:
        if not self.pending:
            return
        self.state = MutationState.TIMED_OUT
        self._settled.set()

    async def wait(self) -> Optional[SignalMessage]:
        """Wait for the outcome.  Raises :class:`MutationTimeout` on timeout."""

        await self._settled.wait()
        if self.state is MutationState.TIMED_OUT:
            raise MutationTimeout(self.action, self.request_id, self.timeout)
        return self.confirmation

    def __repr__(self) -> str:
        return f"Mutation({self.action!r}, {self.request_id!r}, {self.state.value})"


PushHandler = Callable[[Any], None]


class SyncedCollection:
    """
    Base for chat, Q&A and polls.

    Subclasses list their push handlers in :meth:`push_handlers` and the
    frames that only acknowledge a request in ``CONFIRMATIONS``.  Push frames
    that echo a ``requestId`` settle the matching mutation too.
    """

    CONFIRMATIONS: Tuple[Type[SignalMessage], ...] = ()

    def __init__(self, channel: SignalingChannel, *, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.channel = channel
        self.timeout = timeout
        self._pending: Dict[str, Mutation] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._unsubscribe: List[Callable[[], None]] = []
        self.logger = LOG.getChild(type(self).__name__)

    def push_handlers(self) -> Iterable[Tuple[Type[SignalMessage], PushHandler]]:
        return ()

    def attach(self) -> None:
        if self._unsubscribe:
            return
        for kind, handler in self.push_handlers():
            self._unsubscribe.append(self.channel.on(kind, self._wrap_push(handler)))
        for kind in self.CONFIRMATIONS:
            self._unsubscribe.append(self.channel.on(kind, self._settle))
        self.channel.on_close(self.close)

    def _wrap_push(self, handler: PushHandler) -> Callable[[SignalMessage], None]:
        def apply(message: SignalMessage) -> None:
            handler(message)
            self._settle(message)

        return apply

    @property
    def pending(self) -> List[Mutation]:
        return list(self._pending.values())

    async def submit(self, message: SignalMessage) -> Mutation:
        request_id = uuid.uuid4().hex
        message.request_id = request_id
        mutation = Mutation(message.type, request_id, self.timeout)
        self._pending[request_id] = mutation
        self._timers[request_id] = asyncio.get_running_loop().call_later(
            self.timeout, self._expire, request_id
        )
        try:
            await self.channel.send(message)
        except Exception:
            self._forget(request_id)
            raise
        return mutation

    async def mutate(self, message: SignalMessage) -> Optional[SignalMessage]:
        mutation = await self.submit(message)
        return await mutation.wait()

    def _settle(self, message: SignalMessage) -> None:
        request_id = getattr(message, "request_id", None)
        if not request_id:
            return
        mutation = self._forget(request_id)
        if mutation is None:
            self.logger.debug("Ignoring confirmation for unknown request %s", request_id)
            return
        mutation.confirm(message)

    def _expire(self, request_id: str) -> None:
        mutation = self._forget(request_id)
        if mutation is not None:
            self.logger.warning("%s timed out after %.1fs", mutation.action, self.timeout)
            mutation.expire()

    def _forget(self, request_id: str) -> Optional[Mutation]:
        timer = self._timers.pop(request_id, None)
        if timer is not None:
            timer.cancel()
        return self._pending.pop(request_id, None)

    def close(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for mutation in self._pending.values():
            mutation.expire()
        self._pending.clear()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    @property
    def session_id(self) -> str:
        return self.channel.session_id or ""
