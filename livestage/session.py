"""
Session engine.

``SessionEngine`` is the one object a caller holds for a live session.  It
owns the signaling transport, the participant roster, the peer mesh, file
transfer and the chat, Q&A and poll collections.  Nothing here is a module
level singleton; two engines can run side by side in one process.
"""

from __future__ import annotations

import inspect
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .api_client import RestClient
from .capture.sources import acquire_participant_media
from .config import EngineConfig
from .errors import MediaAcquisitionError
from .models import Participant, Role, Session
from .rtc import IceSettings, LocalMedia, MeshCoordinator, RemoteStream
from .signaling import messages
from .signaling.transport import SignalingTransport
from .sync import ChatCollection, PollCollection, QACollection
from .transfer import FileSender, ReceivedFile, TransferReceiver, save_received_file

LOG = logging.getLogger(__name__)

FileListener = Callable[[ReceivedFile], Optional[Awaitable[None]]]


def open_local_media(
    config: EngineConfig,
    *,
    acquire: Callable[[EngineConfig], Dict[str, Any]] = acquire_participant_media,
) -> Tuple[LocalMedia, bool]:
    """
    Open the participant's devices.  Returns ``(media, degraded)``; on an
    acquisition error the session carries on without local audio or video.
    """

    try:
        tracks = acquire(config)
    except MediaAcquisitionError as exc:
        LOG.warning("Continuing without local media: %s", exc)
        return LocalMedia(), True
    return LocalMedia(audio=tracks.get("audio"), video=tracks.get("video")), False


class SessionEngine:
    def __init__(
        self,
        config: EngineConfig,
        *,
        user_id: str,
        display_name: Optional[str] = None,
        role: str = "attendee",
        transport: Optional[SignalingTransport] = None,
        media: Optional[LocalMedia] = None,
        degraded: bool = False,
        api: Optional[RestClient] = None,
        connection_factory: Optional[Callable[[], Any]] = None,
        save_downloads: bool = False,
    ) -> None:
        self.config = config
        self.user_id = user_id
        self.display_name = display_name or user_id
        self.role = Role.parse(role)
        self.transport = transport or SignalingTransport(
            config.relay_url,
            user_id=user_id,
            display_name=self.display_name,
            role=self.role.value,
            reconnect_attempts=config.reconnect_attempts,
            reconnect_delay=config.reconnect_delay,
            queue_size=config.send_queue_size,
        )
        self.api = api
        self.media = media or LocalMedia()
        self.degraded = degraded
        self.session: Optional[Session] = None
        self.save_downloads = save_downloads

        self.mesh = MeshCoordinator(
            self.transport,
            self.media,
            ice=IceSettings.from_config(config),
            connection_factory=connection_factory,
        )
        self.sender = FileSender(
            self.transport,
            chunk_size=config.chunk_size,
            pacing_every=config.pacing_every,
            pacing_delay=config.pacing_delay,
        )
        self.receiver = TransferReceiver(on_file=self._on_file)
        self.chat = ChatCollection(
            self.transport, timeout=config.mutation_timeout, api=api, page_size=config.chat_page_size
        )
        self.qa = QACollection(self.transport, timeout=config.mutation_timeout)
        self.polls = PollCollection(self.transport, timeout=config.mutation_timeout)
        self._file_listeners: List[FileListener] = []
        self.logger = LOG.getChild(f"user.{user_id[:8]}")

    # ------------------------------------------------------------------ lifecycle

    @property
    def joined(self) -> bool:
        return self.session is not None

    @property
    def remote_streams(self) -> Dict[str, RemoteStream]:
        return self.mesh.remote_streams

    async def join(self, session_id: str, auth_token: str) -> Session:
        if self.session is not None:
            if self.session.session_id == session_id:
                return self.session
            raise RuntimeError(f"already joined session {self.session.session_id}")

        self.session = Session(session_id)
        self.session.upsert(self._local_participant())
        self._attach()
        try:
            await self.transport.connect(session_id, auth_token)
        except Exception:
            self._detach()
            self.session = None
            raise
        self.logger.info("Joined session %s%s", session_id, " (degraded)" if self.degraded else "")
        if self.api is not None:
            try:
                await self.chat.load_history()
            except Exception as exc:
                self.logger.warning("Could not load chat history: %s", exc)
        return self.session

    async def leave(self) -> None:
        await self.transport.disconnect()
        self.media.stop()

    async def wait_closed(self) -> None:
        await self.transport.wait_closed()

    def _attach(self) -> None:
        self.transport.on(messages.SessionJoined, self._on_session_joined)
        self.transport.on(messages.ParticipantJoined, self._on_participant_joined)
        self.transport.on(messages.ParticipantLeft, self._on_participant_left)
        self.transport.on(messages.ParticipantMediaChanged, self._on_media_changed)
        self.transport.on(messages.ErrorMessage, self._on_error)
        self.mesh.attach()
        self.receiver.attach(self.transport)
        self.chat.attach()
        self.qa.attach()
        self.polls.attach()
        self.transport.on_close(self._on_transport_closed)

    def _detach(self) -> None:
        self.mesh.detach()
        self.receiver.clear()
        for collection in (self.chat, self.qa, self.polls):
            collection.close()

    def _on_transport_closed(self) -> None:
        self._detach()
        if self.session is not None:
            self.logger.info("Left session %s", self.session.session_id)
        self.session = None

    def _local_participant(self) -> Participant:
        return Participant(
            user_id=self.user_id,
            display_name=self.display_name,
            role=self.role,
            audio_enabled=self.media.audio_enabled,
            video_enabled=self.media.video_enabled,
        )

    # ------------------------------------------------------------------ roster

    def participants(self) -> List[Participant]:
        return self.session.ordered() if self.session is not None else []

    def _on_session_joined(self, message: messages.SessionJoined) -> None:
        if self.session is None:
            return
        roster = [Participant.from_payload(item) for item in message.participants]
        roster = [item for item in roster if item.user_id and item.user_id != self.user_id]
        self.session.replace_all([self._local_participant(), *roster])

    def _on_participant_joined(self, message: messages.ParticipantJoined) -> None:
        if self.session is None or message.user_id == self.user_id:
            return
        self.session.upsert(Participant.from_payload(message.to_wire()))

    def _on_participant_left(self, message: messages.ParticipantLeft) -> None:
        if self.session is not None:
            self.session.remove(message.user_id)

    def _on_media_changed(self, message: messages.ParticipantMediaChanged) -> None:
        if self.session is None:
            return
        participant = self.session.participants.get(message.user_id)
        if participant is not None:
            participant.apply_media_state(message.to_wire())

    def _on_error(self, message: messages.ErrorMessage) -> None:
        self.logger.warning("Relay error %s: %s", message.code, message.message)

    # ------------------------------------------------------------------ moderation

    def _moderation_target(self) -> Tuple[RestClient, Session]:
        if self.api is None:
            raise RuntimeError("moderation needs a REST client")
        if self.session is None:
            raise RuntimeError("not joined to a session")
        return self.api, self.session

    async def mute_participant(self, user_id: str) -> None:
        api, session = self._moderation_target()
        await api.mute_participant(session.session_id, user_id)
        participant = session.participants.get(user_id)
        if participant is not None:
            participant.audio_enabled = False

    async def unmute_participant(self, user_id: str) -> None:
        api, session = self._moderation_target()
        await api.unmute_participant(session.session_id, user_id)
        participant = session.participants.get(user_id)
        if participant is not None:
            participant.audio_enabled = True

    async def remove_participant(self, user_id: str) -> None:
        api, session = self._moderation_target()
        await api.remove_participant(session.session_id, user_id)
        session.remove(user_id)
        await self.mesh.close_link(user_id)

    # ------------------------------------------------------------------ local media

    async def set_audio_enabled(self, enabled: bool) -> None:
        await self.mesh.set_audio_enabled(enabled)
        self._update_local(audio_enabled=self.media.audio_enabled)

    async def set_video_enabled(self, enabled: bool) -> None:
        await self.mesh.set_video_enabled(enabled)
        self._update_local(video_enabled=self.media.video_enabled)

    async def start_screen_share(self, track: Any) -> None:
        await self.mesh.start_screen_share(track)
        self._update_local(screenshare_active=True)

    async def stop_screen_share(self) -> None:
        await self.mesh.stop_screen_share()
        self._update_local(screenshare_active=False)

    def _update_local(self, **values: bool) -> None:
        if self.session is None:
            return
        participant = self.session.participants.get(self.user_id)
        if participant is not None:
            for key, value in values.items():
                setattr(participant, key, value)

    # ------------------------------------------------------------------ files

    def on_file(self, listener: FileListener) -> None:
        if listener not in self._file_listeners:
            self._file_listeners.append(listener)

    async def share_file(self, path: Path, *, to: Optional[str] = None) -> str:
        return await self.sender.send_path(path, to=to)

    async def _on_file(self, received: ReceivedFile) -> None:
        if self.save_downloads:
            target = save_received_file(received, self.config.downloads_dir)
            self.logger.info("Saved %s to %s", received.meta.name, target)
        for listener in list(self._file_listeners):
            result = listener(received)
            if inspect.isawaitable(result):
                await result
