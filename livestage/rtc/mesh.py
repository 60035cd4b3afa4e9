"""
Peer mesh coordinator.

Keeps exactly one :class:`PeerLink` per remote participant, indexed by
participant id, and drives negotiation from signaling frames.  The
participant that receives ``participant-joined`` offers; the newcomer only
answers, so two peers never offer to each other at the same time.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from aiortc import MediaStreamTrack, RTCPeerConnection

from ..errors import NegotiationError
from ..signaling import messages
from ..signaling.transport import SignalingChannel
from .ice import IceSettings
from .media import LocalMedia, RemoteStream
from .peer_link import LinkState, PeerLink

LOG = logging.getLogger(__name__)

ConnectionFactory = Callable[[], Any]
StreamListener = Callable[[str, Optional[RemoteStream]], None]


class MeshCoordinator:
    """Owns the peer links of one session."""

    def __init__(
        self,
        channel: SignalingChannel,
        media: LocalMedia,
        *,
        ice: Optional[IceSettings] = None,
        connection_factory: Optional[ConnectionFactory] = None,
    ) -> None:
        self.channel = channel
        self.media = media
        self.ice = ice or IceSettings()
        self._connection_factory = connection_factory or self._default_connection
        self.links: Dict[str, PeerLink] = {}
        self.remote_streams: Dict[str, RemoteStream] = {}
        self._stream_listeners: List[StreamListener] = []
        self._unsubscribe: List[Callable[[], None]] = []

    def _default_connection(self) -> RTCPeerConnection:
        return RTCPeerConnection(configuration=self.ice.to_configuration())

    # ------------------------------------------------------------------ wiring

    def attach(self) -> None:
        if self._unsubscribe:
            return
        self._unsubscribe = [
            self.channel.on(messages.ParticipantJoined, self._on_participant_joined),
            self.channel.on(messages.ParticipantLeft, self._on_participant_left),
            self.channel.on(messages.WebRTCOffer, self._on_offer),
            self.channel.on(messages.WebRTCAnswer, self._on_answer),
            self.channel.on(messages.IceCandidate, self._on_candidate),
        ]
        self.channel.on_close(self.close_all)

    def detach(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    def on_remote_stream(self, listener: StreamListener) -> None:
        """``listener(user_id, stream)``; stream is None when it goes away."""

        if listener not in self._stream_listeners:
            self._stream_listeners.append(listener)

    def state_of(self, user_id: str) -> Optional[LinkState]:
        link = self.links.get(user_id)
        return link.state if link is not None else None

    # ------------------------------------------------------------------ handlers

    async def _on_participant_joined(self, message: messages.ParticipantJoined) -> None:
        if message.user_id == self.channel.user_id:
            return
        link = await self._create_link(message.user_id)
        await self._negotiate(link, link.start_offer())

    async def _on_offer(self, message: messages.WebRTCOffer) -> None:
        remote_id = message.sender
        if not remote_id or remote_id == self.channel.user_id:
            return
        link = self.links.get(remote_id)
        if link is None or link.state is not LinkState.NEW:
            link = await self._create_link(remote_id)
        await self._negotiate(link, link.accept_offer(message.offer))

    async def _on_answer(self, message: messages.WebRTCAnswer) -> None:
        link = self.links.get(message.sender or "")
        if link is None:
            LOG.debug("Answer from unknown peer %s", message.sender)
            return
        await self._negotiate(link, link.accept_answer(message.answer))

    async def _on_candidate(self, message: messages.IceCandidate) -> None:
        remote_id = message.sender or ""
        link = self.links.get(remote_id)
        if link is None:
            # Candidates can precede the offer when frames race the join.
            link = await self._create_link(remote_id) if remote_id else None
            if link is None:
                return
        await self._negotiate(link, link.add_candidate(message.candidate))

    async def _on_participant_left(self, message: messages.ParticipantLeft) -> None:
        await self.close_link(message.user_id)

    async def _negotiate(self, link: PeerLink, step) -> None:
        try:
            await step
        except NegotiationError:
            LOG.exception("Negotiation with %s failed", link.remote_id)
            await link.close()

    # ------------------------------------------------------------------ links

    async def _create_link(self, remote_id: str) -> PeerLink:
        existing = self.links.pop(remote_id, None)
        if existing is not None:
            LOG.info("Replacing link to %s (state %s)", remote_id, existing.state.value)
            await existing.close()
            # The replaced link's tracks are gone; the new one announces its own.
            if self.remote_streams.pop(remote_id, None) is not None:
                self._notify(remote_id, None)
        link = PeerLink(
            remote_id,
            self._connection_factory(),
            send=self.channel.send,
            on_track=self._on_remote_track,
            on_closed=self._on_link_closed,
        )
        link.attach(self.media)
        self.links[remote_id] = link
        return link

    def _on_remote_track(self, remote_id: str, track: MediaStreamTrack) -> None:
        stream = self.remote_streams.get(remote_id)
        if stream is None:
            stream = self.remote_streams[remote_id] = RemoteStream(remote_id)
        stream.add_track(track)
        self._notify(remote_id, stream)

    def _on_link_closed(self, link: PeerLink) -> None:
        if self.links.get(link.remote_id) is not link:
            return
        del self.links[link.remote_id]
        if self.remote_streams.pop(link.remote_id, None) is not None:
            self._notify(link.remote_id, None)

    def _notify(self, remote_id: str, stream: Optional[RemoteStream]) -> None:
        for listener in list(self._stream_listeners):
            try:
                listener(remote_id, stream)
            except Exception:
                LOG.exception("Remote stream listener failed")

    async def close_link(self, remote_id: str) -> None:
        link = self.links.get(remote_id)
        if link is not None:
            await link.close()

    async def close_all(self) -> None:
        links = list(self.links.values())
        if links:
            await asyncio.gather(*(link.close() for link in links))
        self.links.clear()
        self.remote_streams.clear()

    # ------------------------------------------------------------------ local media

    async def set_audio_enabled(self, enabled: bool) -> None:
        self.media.set_audio_enabled(enabled)
        await self._broadcast_state(is_muted=not enabled)

    async def set_video_enabled(self, enabled: bool) -> None:
        self.media.set_video_enabled(enabled)
        await self._broadcast_state(video_enabled=enabled)

    async def start_screen_share(self, track: MediaStreamTrack) -> None:
        self.media.use_screen(track)
        self._replace_video()

        @track.on("ended")
        def on_ended() -> None:
            if self.media.screen is track:
                LOG.info("Screen share ended by the source")
                asyncio.ensure_future(self.stop_screen_share())

        await self._broadcast_state(screenshare_active=True)

    async def stop_screen_share(self) -> None:
        if not self.media.screen_sharing:
            return
        self.media.use_camera()
        self._replace_video()
        await self._broadcast_state(screenshare_active=False)

    def _replace_video(self) -> None:
        for link in list(self.links.values()):
            link.replace_track("video", self.media.clone("video"))

    async def _broadcast_state(self, **state: Any) -> None:
        await self.channel.send(
            messages.UpdateMediaState(session_id=self.channel.session_id, **state)
        )
