"""
Device acquisition for capture.

Sources are opened through ffmpeg devices with aiortc's ``MediaPlayer``; the
device names and input formats come from the engine profile.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from ..config import EngineConfig
from ..errors import MediaAcquisitionError

LOG = logging.getLogger(__name__)

PlayerFactory = Callable[..., Any]


def open_device(
    device: str,
    *,
    format: Optional[str] = None,
    options: Optional[Dict[str, str]] = None,
    factory: PlayerFactory = MediaPlayer,
) -> Any:
    try:
        return factory(device, format=format, options=options or {})
    except (av.error.FFmpegError, OSError, ValueError) as exc:
        raise MediaAcquisitionError(f"could not open {device!r}: {exc}") from exc


@dataclass
class CaptureSources:
    """Tracks opened for one capture, plus the players that feed them."""

    display: Optional[MediaStreamTrack] = None
    system_audio: Optional[MediaStreamTrack] = None
    microphone: Optional[MediaStreamTrack] = None
    players: List[Any] = field(default_factory=list)
    _stopped: bool = False

    @property
    def audio_tracks(self) -> List[MediaStreamTrack]:
        return [track for track in (self.system_audio, self.microphone) if track is not None]

    def tracks(self) -> List[MediaStreamTrack]:
        return [track for track in (self.display, self.system_audio, self.microphone) if track is not None]

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        for track in self.tracks():
            track.stop()
        LOG.debug("Capture sources stopped")


def acquire_sources(
    config: EngineConfig,
    *,
    microphone: bool = True,
    factory: PlayerFactory = MediaPlayer,
) -> CaptureSources:
    """
    Open the display and audio devices named by ``config``.

    Only the display is mandatory.  A missing system audio device is logged
    and recording continues with the microphone alone, or without audio.
    """

    if not config.display_device:
        raise MediaAcquisitionError("no display device configured")

    options = {"framerate": str(config.frame_rate)}
    display_player = open_device(
        config.display_device, format=config.display_format, options=options, factory=factory
    )
    sources = CaptureSources(display=display_player.video, players=[display_player])
    if sources.display is None:
        raise MediaAcquisitionError(f"{config.display_device!r} has no video stream")
    # Some display grabbers carry the system mix on the same input.
    sources.system_audio = display_player.audio

    if sources.system_audio is None and config.system_audio_device:
        try:
            player = open_device(config.system_audio_device, format=config.audio_format, factory=factory)
        except MediaAcquisitionError as exc:
            LOG.warning("%s", exc)
        else:
            sources.players.append(player)
            sources.system_audio = player.audio
    if sources.system_audio is None:
        LOG.warning("System audio not captured; participants will not be heard in the recording")

    if microphone and config.microphone_device:
        try:
            player = open_device(config.microphone_device, format=config.audio_format, factory=factory)
        except MediaAcquisitionError as exc:
            LOG.warning("Microphone unavailable: %s", exc)
        else:
            sources.players.append(player)
            sources.microphone = player.audio
    return sources


def acquire_participant_media(config: EngineConfig, *, factory: PlayerFactory = MediaPlayer) -> Dict[str, Optional[MediaStreamTrack]]:
    """Open the microphone and display tracks a participant shares in the mesh."""

    tracks: Dict[str, Optional[MediaStreamTrack]] = {"audio": None, "video": None}
    if config.microphone_device:
        player = open_device(config.microphone_device, format=config.audio_format, factory=factory)
        tracks["audio"] = player.audio
    if config.display_device:
        player = open_device(
            config.display_device,
            format=config.display_format,
            options={"framerate": str(config.frame_rate)},
            factory=factory,
        )
        tracks["video"] = player.video
    return tracks
