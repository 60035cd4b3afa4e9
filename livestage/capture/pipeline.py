"""
Capture and composite pipeline.

Acquire display and audio, mix audio, optionally watermark the video,
record into segments and, on stop, hand the artifact to the uploader with a
local save as fallback.  Stop runs the same cleanup whether the caller asked
for it or the display source ended on its own.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

from aiortc import MediaStreamTrack

from ..config import EngineConfig
from ..errors import MediaAcquisitionError
from .mixers import AudioMixerTrack, MixerLayer
from .overlay import OverlayChain, WatermarkTrack
from .recorder import ARTIFACT_MIME, ARTIFACT_SUFFIX, Segment, SegmentRecorder, SegmentSink
from .sources import CaptureSources, acquire_sources

LOG = logging.getLogger(__name__)

Uploader = Callable[[bytes, str, str], Awaitable[str]]
SourceAcquirer = Callable[[EngineConfig], CaptureSources]


@dataclass
class CaptureSession:
    sources: CaptureSources
    recorder: SegmentRecorder
    video: Optional[MediaStreamTrack] = None
    audio: Optional[MediaStreamTrack] = None
    mixer: Optional[AudioMixerTrack] = None
    compositor: Optional[WatermarkTrack] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def segments(self) -> List[Segment]:
        return self.recorder.sink.segments


@dataclass
class RecordingResult:
    size: int
    segments: int
    url: Optional[str] = None
    path: Optional[Path] = None
    reason: str = "stopped"


class CapturePipeline:
    """One recording at a time, started and stopped explicitly."""

    def __init__(
        self,
        config: EngineConfig,
        *,
        uploader: Optional[Uploader] = None,
        acquire: SourceAcquirer = acquire_sources,
        recorder_factory: Optional[Callable[[SegmentSink], SegmentRecorder]] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.uploader = uploader
        self._acquire = acquire
        self._recorder_factory = recorder_factory or SegmentRecorder
        self._monotonic = monotonic
        self.session: Optional[CaptureSession] = None
        self.result: Optional[RecordingResult] = None
        self._stopping: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    @property
    def recording(self) -> bool:
        return self.session is not None and self._stopping is None

    async def start(self) -> CaptureSession:
        if self.session is not None:
            raise RuntimeError("capture already started")
        sources = self._acquire(self.config)
        try:
            session = self._assemble(sources)
            await session.recorder.start()
        except Exception:
            sources.stop()
            raise
        self.session = session
        self.result = None
        self._stopped.clear()

        display = sources.display

        @display.on("ended")
        def on_display_ended() -> None:
            if self._stopping is None:
                LOG.warning("Display source ended; finishing the recording")
                self._begin_stop("source-ended")

        LOG.info("Capture started (%s audio source(s))", len(sources.audio_tracks))
        return session

    def _assemble(self, sources: CaptureSources) -> CaptureSession:
        if sources.display is None:
            raise MediaAcquisitionError("capture needs a display source")
        sink = SegmentSink(self.config.segment_seconds, monotonic=self._monotonic)
        session = CaptureSession(sources=sources, recorder=self._recorder_factory(sink))

        audio_tracks = sources.audio_tracks
        if len(audio_tracks) > 1:
            session.mixer = AudioMixerTrack(
                [
                    MixerLayer(sources.system_audio, name="system"),
                    MixerLayer(sources.microphone, name="microphone"),
                ]
            )
            session.audio = session.mixer
        elif audio_tracks:
            session.audio = audio_tracks[0]

        if self.config.watermark_text:
            session.compositor = WatermarkTrack(
                sources.display,
                OverlayChain.watermark(self.config.watermark_text),
                frame_rate=self.config.frame_rate,
            )
            session.video = session.compositor
        else:
            session.video = sources.display

        for track in (session.video, session.audio):
            if track is not None:
                session.recorder.add_track(track)
        return session

    def _begin_stop(self, reason: str) -> asyncio.Task:
        if self._stopping is None:
            self._stopping = asyncio.ensure_future(self._finish(reason))
        return self._stopping

    async def stop(self) -> Optional[RecordingResult]:
        if self.session is None:
            return self.result
        return await self._begin_stop("stopped")

    async def wait_stopped(self) -> Optional[RecordingResult]:
        await self._stopped.wait()
        return self.result

    async def _finish(self, reason: str) -> RecordingResult:
        try:
            return await self._shutdown(reason)
        finally:
            self.session = None
            self._stopping = None
            self._stopped.set()

    async def _shutdown(self, reason: str) -> RecordingResult:
        session = self.session
        if session is None:
            raise RuntimeError("capture is not running")
        try:
            if session.compositor is not None:
                session.compositor.stop()
            if session.mixer is not None:
                session.mixer.stop()
            artifact = await session.recorder.stop()
        finally:
            session.sources.stop()

        result = RecordingResult(size=len(artifact), segments=len(session.segments), reason=reason)
        name = f"session-recording-{session.started_at.strftime('%Y%m%dT%H%M%SZ')}{ARTIFACT_SUFFIX}"
        if self.uploader is not None:
            try:
                result.url = await self.uploader(artifact, name, ARTIFACT_MIME)
            except Exception as exc:
                LOG.warning("Upload failed, saving locally: %s", exc)
        if result.url is None:
            result.path = self._save_locally(artifact, name)

        self.result = result
        return result

    def _save_locally(self, artifact: bytes, name: str) -> Path:
        directory = Path(self.config.recordings_dir)
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / name
        target.write_bytes(artifact)
        LOG.info("Recording saved to %s", target)
        return target


def rest_uploader(client: Any, session_id: str) -> Uploader:
    """Adapt :class:`livestage.api_client.RestClient` to the pipeline uploader."""

    async def upload(data: bytes, filename: str, mime: str) -> str:
        return await client.upload_recording(session_id, data, filename=filename, mime=mime)

    return upload
