"""
Segmented recording.

aiortc's ``MediaRecorder`` muxes into a ``SegmentSink``; the sink cuts the
byte stream into timed segments the way a browser recorder hands out
timeslices.  Concatenating the segments in order yields the full artifact.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaRecorder

LOG = logging.getLogger(__name__)

CONTAINER_FORMAT = "matroska"
ARTIFACT_MIME = "video/x-matroska"
ARTIFACT_SUFFIX = ".mkv"

MonotonicCallable = Callable[[], float]


@dataclass(frozen=True)
class Segment:
    index: int
    started_at: float
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


class SegmentSink:
    """Write-only file object that groups writes into timed segments."""

    def __init__(self, segment_seconds: float = 1.0, *, monotonic: Optional[MonotonicCallable] = None) -> None:
        self.segment_seconds = max(0.0, float(segment_seconds))
        self._monotonic = monotonic or time.monotonic
        self.segments: List[Segment] = []
        self._buffer = bytearray()
        self._segment_start: Optional[float] = None
        self.closed = False

    def write(self, data: Any) -> int:
        if self.closed:
            raise ValueError("write to closed sink")
        now = self._monotonic()
        if self._segment_start is None:
            self._segment_start = now
        elif self._buffer and now - self._segment_start >= self.segment_seconds:
            self._cut(now)
        self._buffer.extend(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def _cut(self, now: float) -> None:
        self.segments.append(
            Segment(index=len(self.segments), started_at=self._segment_start or now, data=bytes(self._buffer))
        )
        self._buffer.clear()
        self._segment_start = now

    def close(self) -> None:
        if self.closed:
            return
        if self._buffer:
            self._cut(self._monotonic())
        self.closed = True

    @property
    def size(self) -> int:
        return sum(segment.size for segment in self.segments) + len(self._buffer)

    def getvalue(self) -> bytes:
        return b"".join(segment.data for segment in self.segments) + bytes(self._buffer)


class SegmentRecorder:
    """Records audio and video tracks into a :class:`SegmentSink`."""

    def __init__(
        self,
        sink: Optional[SegmentSink] = None,
        *,
        container: str = CONTAINER_FORMAT,
        recorder_factory: Callable[..., Any] = MediaRecorder,
    ) -> None:
        self.sink = sink or SegmentSink()
        self._recorder = recorder_factory(self.sink, format=container)
        self.tracks: List[MediaStreamTrack] = []
        self.started = False
        self.stopped = False

    def add_track(self, track: MediaStreamTrack) -> None:
        self._recorder.addTrack(track)
        self.tracks.append(track)

    async def start(self) -> None:
        if self.started:
            return
        self.started = True
        await self._recorder.start()
        LOG.info("Recording %s track(s)", len(self.tracks))

    async def stop(self) -> bytes:
        if not self.stopped:
            self.stopped = True
            try:
                await self._recorder.stop()
            finally:
                self.sink.close()
            LOG.info("Recording stopped: %s segments, %s bytes", len(self.sink.segments), self.sink.size)
        return self.artifact()

    def artifact(self) -> bytes:
        return self.sink.getvalue()
