"""
Local and remote media bookkeeping for the mesh.

``LocalMedia`` is the single owner of the local source tracks.  Peer links
only ever receive relay clones of those sources, so stopping a link never
stops a camera, microphone or display that other links still read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaRelay
from av import AudioFrame, VideoFrame

LOG = logging.getLogger(__name__)


class GatedTrack(MediaStreamTrack):
    """
    Pass-through track that emits silence or black frames while disabled.

    Timing is taken from the source frames so downstream encoders see an
    unbroken stream when the gate flips.
    """

    def __init__(self, source: MediaStreamTrack, *, enabled: bool = True) -> None:
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = enabled

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if isinstance(frame, AudioFrame):
            return _silent_like(frame)
        if isinstance(frame, VideoFrame):
            return _black_like(frame)
        return frame


def _silent_like(frame: AudioFrame) -> AudioFrame:
    samples = np.zeros_like(frame.to_ndarray())
    silent = AudioFrame.from_ndarray(samples, format=frame.format.name, layout=frame.layout.name)
    silent.sample_rate = frame.sample_rate
    silent.pts = frame.pts
    silent.time_base = frame.time_base
    return silent


def _black_like(frame: VideoFrame) -> VideoFrame:
    pixels = np.zeros((frame.height, frame.width, 3), dtype=np.uint8)
    black = VideoFrame.from_ndarray(pixels, format="rgb24")
    black.pts = frame.pts
    black.time_base = frame.time_base
    return black


class LocalMedia:
    """Shared local sources plus the gates and relay that fan them out."""

    def __init__(
        self,
        audio: Optional[MediaStreamTrack] = None,
        video: Optional[MediaStreamTrack] = None,
        *,
        relay: Optional[MediaRelay] = None,
    ) -> None:
        self._relay = relay or MediaRelay()
        self._audio_enabled = audio is not None
        self._video_enabled = video is not None
        self.camera = video
        self.screen: Optional[MediaStreamTrack] = None
        self._gates: Dict[str, GatedTrack] = {}
        self._owned: List[MediaStreamTrack] = []
        self._stopped = False
        if audio is not None:
            self._own(audio)
            self._gates["audio"] = GatedTrack(audio)
        if video is not None:
            self._own(video)
            self._gates["video"] = GatedTrack(video)

    @property
    def audio_enabled(self) -> bool:
        return self._audio_enabled

    @property
    def video_enabled(self) -> bool:
        return self._video_enabled

    @property
    def screen_sharing(self) -> bool:
        return self.screen is not None

    def has(self, kind: str) -> bool:
        return kind in self._gates

    def source(self, kind: str) -> Optional[MediaStreamTrack]:
        gate = self._gates.get(kind)
        return gate.source if gate is not None else None

    def clone(self, kind: str) -> Optional[MediaStreamTrack]:
        """Return a fresh relay subscription for ``kind`` or None if absent."""

        if self._stopped:
            return None
        gate = self._gates.get(kind)
        if gate is None:
            return None
        return self._relay.subscribe(gate, buffered=False)

    def set_audio_enabled(self, enabled: bool) -> None:
        self._audio_enabled = bool(enabled)
        gate = self._gates.get("audio")
        if gate is not None:
            gate.enabled = self._audio_enabled

    def set_video_enabled(self, enabled: bool) -> None:
        self._video_enabled = bool(enabled)
        gate = self._gates.get("video")
        if gate is not None:
            gate.enabled = self._video_enabled

    def use_screen(self, track: MediaStreamTrack) -> None:
        """Swap the outbound video source to a display capture track."""

        if self.screen is not None and self.screen is not track:
            self._release(self.screen)
        self.screen = track
        self._own(track)
        self._gates["video"] = GatedTrack(track, enabled=self._video_enabled)

    def use_camera(self) -> None:
        """Swap back to the camera source and stop the display track."""

        screen, self.screen = self.screen, None
        if screen is not None:
            self._release(screen)
        if self.camera is not None:
            self._gates["video"] = GatedTrack(self.camera, enabled=self._video_enabled)
        else:
            self._gates.pop("video", None)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        for track in self._owned:
            track.stop()
        self._owned.clear()
        self._gates.clear()
        self.screen = None
        LOG.info("Local media stopped")

    def _own(self, track: MediaStreamTrack) -> None:
        if track not in self._owned:
            self._owned.append(track)

    def _release(self, track: MediaStreamTrack) -> None:
        if track in self._owned:
            self._owned.remove(track)
        track.stop()


@dataclass
class RemoteStream:
    """Inbound tracks received from one remote participant."""

    user_id: str
    tracks: Dict[str, MediaStreamTrack] = field(default_factory=dict)

    def add_track(self, track: MediaStreamTrack) -> None:
        self.tracks[track.kind] = track

    @property
    def audio(self) -> Optional[MediaStreamTrack]:
        return self.tracks.get("audio")

    @property
    def video(self) -> Optional[MediaStreamTrack]:
        return self.tracks.get("video")
