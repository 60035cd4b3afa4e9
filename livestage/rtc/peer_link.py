"""
One peer connection and its negotiation state.

A link knows the remote participant id, its peer connection and the plain
callbacks it reports through.  It never reaches back into the coordinator
that created it.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import MediaStreamTrack

from ..errors import NegotiationError
from ..signaling import messages
from ..signaling.messages import SignalMessage
from .ice import (
    candidate_from_payload,
    candidate_to_payload,
    description_from_payload,
    description_to_payload,
)
from .media import LocalMedia

LOG = logging.getLogger(__name__)


class LinkState(str, Enum):
    NEW = "new"
    OFFER_SENT = "offer-sent"
    ANSWER_SENT = "answer-sent"
    CONNECTED = "connected"
    CLOSED = "closed"


TRANSITIONS: Dict[LinkState, set] = {
    LinkState.NEW: {LinkState.OFFER_SENT, LinkState.ANSWER_SENT, LinkState.CLOSED},
    LinkState.OFFER_SENT: {LinkState.CONNECTED, LinkState.CLOSED},
    LinkState.ANSWER_SENT: {LinkState.CONNECTED, LinkState.CLOSED},
    LinkState.CONNECTED: {LinkState.CLOSED},
    LinkState.CLOSED: set(),
}

SendFn = Callable[[SignalMessage], Awaitable[None]]
TrackCallback = Callable[[str, MediaStreamTrack], None]
ClosedCallback = Callable[["PeerLink"], None]


class PeerLink:
    """Negotiation state machine for a single remote participant."""

    def __init__(
        self,
        remote_id: str,
        connection: Any,
        *,
        send: SendFn,
        on_track: Optional[TrackCallback] = None,
        on_closed: Optional[ClosedCallback] = None,
    ) -> None:
        self.remote_id = remote_id
        self.connection = connection
        self._send = send
        self._on_track = on_track
        self._on_closed = on_closed
        self.state = LinkState.NEW
        self.history: List[LinkState] = [LinkState.NEW]
        self._pending_candidates: List[Dict[str, Any]] = []
        self._remote_description_set = False
        self._senders: Dict[str, Any] = {}
        self._outbound: Dict[str, MediaStreamTrack] = {}
        self.logger = LOG.getChild(f"peer.{remote_id[:8]}")
        self._wire_events()

    # ------------------------------------------------------------------ setup

    def _wire_events(self) -> None:
        pc = self.connection

        @pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            if self.state is LinkState.CLOSED:
                return
            self.logger.info("Remote %s track received", track.kind)
            if self._on_track is not None:
                self._on_track(self.remote_id, track)

        @pc.on("connectionstatechange")
        async def on_connection_state() -> None:
            state = pc.connectionState
            self.logger.debug("Connection state %s", state)
            if state == "connected" and self.state is LinkState.ANSWER_SENT:
                self._transition(LinkState.CONNECTED)
            elif state == "failed":
                self.logger.warning("Peer connection failed; closing link")
                await self.close()

        @pc.on("icecandidate")
        async def on_ice_candidate(candidate: Any) -> None:
            if candidate is None or self.state is LinkState.CLOSED:
                return
            await self._send(
                messages.IceCandidate(to=self.remote_id, candidate=candidate_to_payload(candidate))
            )

    def attach(self, media: LocalMedia) -> None:
        """Add one relay clone per available local kind."""

        for kind in ("audio", "video"):
            clone = media.clone(kind)
            if clone is None:
                continue
            self._senders[kind] = self.connection.addTrack(clone)
            self._outbound[kind] = clone

    @property
    def is_closed(self) -> bool:
        return self.state is LinkState.CLOSED

    @property
    def outbound_tracks(self) -> Dict[str, MediaStreamTrack]:
        return dict(self._outbound)

    # ------------------------------------------------------------------ negotiation

    async def start_offer(self) -> None:
        self._require(LinkState.NEW, "offer")
        try:
            offer = await self.connection.createOffer()
            await self.connection.setLocalDescription(offer)
        except Exception as exc:
            raise NegotiationError(f"could not create offer for {self.remote_id}: {exc}") from exc
        self._transition(LinkState.OFFER_SENT)
        payload = description_to_payload(self.connection.localDescription)
        await self._send(messages.WebRTCOffer(to=self.remote_id, offer=payload))

    async def accept_offer(self, offer: Dict[str, Any]) -> None:
        self._require(LinkState.NEW, "answer")
        try:
            await self.connection.setRemoteDescription(description_from_payload(offer))
            self._remote_description_set = True
            await self._flush_candidates()
            answer = await self.connection.createAnswer()
            await self.connection.setLocalDescription(answer)
        except NegotiationError:
            raise
        except Exception as exc:
            raise NegotiationError(f"could not answer {self.remote_id}: {exc}") from exc
        self._transition(LinkState.ANSWER_SENT)
        payload = description_to_payload(self.connection.localDescription)
        await self._send(messages.WebRTCAnswer(to=self.remote_id, answer=payload))
        if getattr(self.connection, "connectionState", None) == "connected":
            self._transition(LinkState.CONNECTED)

    async def accept_answer(self, answer: Dict[str, Any]) -> None:
        if self.state is not LinkState.OFFER_SENT:
            self.logger.debug("Ignoring answer in state %s", self.state.value)
            return
        try:
            await self.connection.setRemoteDescription(description_from_payload(answer))
            self._remote_description_set = True
            await self._flush_candidates()
        except NegotiationError:
            raise
        except Exception as exc:
            raise NegotiationError(f"could not apply answer from {self.remote_id}: {exc}") from exc
        self._transition(LinkState.CONNECTED)

    async def add_candidate(self, payload: Optional[Dict[str, Any]]) -> None:
        if self.state is LinkState.CLOSED or not payload:
            return
        if not self._remote_description_set:
            self._pending_candidates.append(payload)
            return
        await self._apply_candidate(payload)

    async def _flush_candidates(self) -> None:
        pending, self._pending_candidates = self._pending_candidates, []
        for payload in pending:
            await self._apply_candidate(payload)

    async def _apply_candidate(self, payload: Dict[str, Any]) -> None:
        try:
            candidate = candidate_from_payload(payload)
            if candidate is not None:
                await self.connection.addIceCandidate(candidate)
        except Exception as exc:
            raise NegotiationError(f"bad ICE candidate from {self.remote_id}: {exc}") from exc

    # ------------------------------------------------------------------ tracks

    def replace_track(self, kind: str, track: Optional[MediaStreamTrack]) -> None:
        """Swap the outbound track for ``kind`` without renegotiating."""

        if self.state is LinkState.CLOSED:
            if track is not None:
                track.stop()
            return
        sender = self._senders.get(kind)
        if sender is None:
            self.logger.warning("No %s sender to replace; renegotiation required", kind)
            if track is not None:
                track.stop()
            return
        previous = self._outbound.pop(kind, None)
        sender.replaceTrack(track)
        if track is not None:
            self._outbound[kind] = track
        if previous is not None:
            previous.stop()

    # ------------------------------------------------------------------ teardown

    async def close(self) -> None:
        if self.state is LinkState.CLOSED:
            return
        self._transition(LinkState.CLOSED)
        self._pending_candidates.clear()
        outbound, self._outbound = list(self._outbound.values()), {}
        for track in outbound:
            track.stop()
        try:
            await self.connection.close()
        except Exception:
            self.logger.exception("Error while closing peer connection")
        self.logger.info("Link closed")
        if self._on_closed is not None:
            self._on_closed(self)

    # ------------------------------------------------------------------ helpers

    def _require(self, expected: LinkState, action: str) -> None:
        if self.state is not expected:
            raise NegotiationError(
                f"cannot {action} {self.remote_id} in state {self.state.value}"
            )

    def _transition(self, target: LinkState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise NegotiationError(
                f"invalid transition {self.state.value} -> {target.value} for {self.remote_id}"
            )
        self.state = target
        self.history.append(target)
        self.logger.debug("State -> %s", target.value)
