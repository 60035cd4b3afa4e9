"""Tests for the capture pipeline: segmenting, overlays, mixing and stop handling."""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import av
import httpx
import numpy as np
import pytest
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from PIL import Image

from fakes import FakeClock, FakeTrack
from livestage.api_client import RestClient
from livestage.capture import (
    AudioMixerTrack,
    CapturePipeline,
    CaptureSources,
    ClockOverlay,
    MixerLayer,
    OverlayChain,
    SegmentRecorder,
    SegmentSink,
    TextOverlay,
    WatermarkTrack,
    acquire_sources,
    rest_uploader,
)
from livestage.capture.mixers import FRAME_SAMPLES, SAMPLE_RATE
from livestage.config import EngineConfig
from livestage.errors import MediaAcquisitionError, UploadError


class ToneTrack(MediaStreamTrack):
    kind = "audio"

    def __init__(self, value: int, frames: int) -> None:
        super().__init__()
        self.value = value
        self.remaining = frames
        self.pts = 0

    async def recv(self) -> av.AudioFrame:
        if self.remaining <= 0:
            raise MediaStreamError
        self.remaining -= 1
        samples = np.full((2, FRAME_SAMPLES), self.value, dtype=np.int16)
        frame = av.AudioFrame.from_ndarray(samples, format="s16p", layout="stereo")
        frame.sample_rate = SAMPLE_RATE
        frame.pts = self.pts
        self.pts += FRAME_SAMPLES
        return frame


class PictureTrack(MediaStreamTrack):
    kind = "video"

    def __init__(self, frames: int) -> None:
        super().__init__()
        self.remaining = frames
        self.finish = asyncio.Event()

    async def recv(self) -> av.VideoFrame:
        if self.remaining <= 0:
            await self.finish.wait()
            raise MediaStreamError
        self.remaining -= 1
        return av.VideoFrame.from_ndarray(np.zeros((48, 64, 3), dtype=np.uint8), format="rgb24")


class FakeMediaRecorder:
    def __init__(self, sink, format: Optional[str] = None) -> None:
        self.sink = sink
        self.format = format
        self.tracks: List[MediaStreamTrack] = []
        self.started = False
        self.stops = 0

    def addTrack(self, track: MediaStreamTrack) -> None:
        self.tracks.append(track)

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stops += 1
        self.sink.write(b"header")
        self.sink.write(b"cluster")


class FakePlayer:
    def __init__(self, video=None, audio=None) -> None:
        self.video = video
        self.audio = audio


# ---------------------------------------------------------------- segmenting


def test_segment_sink_cuts_by_elapsed_time(clock: FakeClock) -> None:
    sink = SegmentSink(1.0, monotonic=clock.now)

    sink.write(b"aa")
    clock.advance(0.5)
    sink.write(b"bb")
    clock.advance(0.7)
    sink.write(b"cc")
    clock.advance(1.5)
    sink.write(b"dd")
    sink.close()
    sink.close()

    assert [segment.data for segment in sink.segments] == [b"aabb", b"cc", b"dd"]
    assert [segment.index for segment in sink.segments] == [0, 1, 2]
    assert sink.getvalue() == b"aabbccdd"
    assert sink.size == 8
    with pytest.raises(ValueError):
        sink.write(b"late")


@pytest.mark.asyncio
async def test_segment_recorder_stop_is_idempotent() -> None:
    recorders: List[FakeMediaRecorder] = []

    def factory(sink, format=None):
        recorder = FakeMediaRecorder(sink, format)
        recorders.append(recorder)
        return recorder

    recorder = SegmentRecorder(recorder_factory=factory)
    recorder.add_track(FakeTrack("video"))
    await recorder.start()

    first = await recorder.stop()
    second = await recorder.stop()

    assert first == second == b"headercluster"
    assert recorders[0].format == "matroska"
    assert recorders[0].stops == 1
    assert recorder.sink.closed is True


# ---------------------------------------------------------------- overlays


def test_empty_overlay_chain_returns_the_input() -> None:
    image = Image.new("RGB", (32, 32))

    assert OverlayChain().apply(image) is image


def test_text_overlay_paints_near_its_position() -> None:
    image = Image.new("RGB", (320, 240))
    chain = OverlayChain([TextOverlay("LIVE", position=(10, 10), shadow=None)])

    result = chain.apply(image)

    assert result.size == (320, 240)
    assert result.mode == "RGB"
    assert result.crop((10, 10, 60, 30)).getbbox() is not None
    assert result.crop((200, 150, 320, 240)).getbbox() is None


def test_clock_overlay_is_anchored_bottom_right() -> None:
    image = Image.new("RGB", (320, 240))
    chain = OverlayChain([ClockOverlay(margin=4)])

    result = chain.apply(image, now=datetime(2024, 5, 1, 12, 30, 0))

    assert result.crop((160, 200, 320, 240)).getbbox() is not None
    assert result.crop((0, 0, 160, 120)).getbbox() is None


def test_watermark_chain_composition() -> None:
    assert len(OverlayChain.watermark("brand").overlays) == 2
    assert len(OverlayChain.watermark(None).overlays) == 1
    assert OverlayChain.watermark(None, clock=False).overlays == []


@pytest.mark.asyncio
async def test_watermark_track_paces_frames_and_ends_with_source(clock: FakeClock) -> None:
    source = PictureTrack(frames=1)
    track = WatermarkTrack(source, OverlayChain.watermark("x"), frame_rate=10, monotonic=clock.now)

    first = await track.recv()
    clock.advance(0.1)
    second = await track.recv()

    assert (first.width, first.height) == (64, 48)
    assert first.pts == 0
    assert second.pts == 9000

    source.finish.set()
    for _ in range(5):
        await asyncio.sleep(0)
    with pytest.raises(MediaStreamError):
        await track.recv()
    assert track.readyState == "ended"


# ---------------------------------------------------------------- mixing


@pytest.mark.asyncio
async def test_mixer_sums_layers_with_gain() -> None:
    mixer = AudioMixerTrack(
        [MixerLayer(ToneTrack(1000, frames=1)), MixerLayer(ToneTrack(500, frames=1), gain=0.5)]
    )

    frame = await mixer.recv()

    samples = frame.to_ndarray()
    assert frame.samples == FRAME_SAMPLES
    assert frame.sample_rate == SAMPLE_RATE
    assert int(samples.min()) == int(samples.max()) == 1250


@pytest.mark.asyncio
async def test_mixer_clips_instead_of_wrapping() -> None:
    mixer = AudioMixerTrack([MixerLayer(ToneTrack(30000, frames=1)), MixerLayer(ToneTrack(30000, frames=1))])

    frame = await mixer.recv()

    assert int(frame.to_ndarray().max()) == 32767


@pytest.mark.asyncio
async def test_mixer_drops_ended_layers_then_ends() -> None:
    mixer = AudioMixerTrack([MixerLayer(ToneTrack(100, frames=1)), MixerLayer(ToneTrack(7, frames=2))])

    first = await mixer.recv()
    second = await mixer.recv()

    assert int(first.to_ndarray().max()) == 107
    assert int(second.to_ndarray().max()) == 7
    assert second.pts == FRAME_SAMPLES
    with pytest.raises(MediaStreamError):
        await mixer.recv()
    assert mixer.readyState == "ended"


# ---------------------------------------------------------------- acquisition


def test_display_device_is_mandatory() -> None:
    with pytest.raises(MediaAcquisitionError):
        acquire_sources(EngineConfig(), factory=FakePlayer)


def test_missing_system_audio_is_tolerated() -> None:
    display = FakeTrack("video")
    microphone = FakeTrack("audio")

    def factory(device, format=None, options=None):
        if device == "screen":
            return FakePlayer(video=display)
        if device == "monitor":
            raise OSError("no such device")
        return FakePlayer(audio=microphone)

    config = EngineConfig(display_device="screen", system_audio_device="monitor", microphone_device="mic")
    sources = acquire_sources(config, factory=factory)

    assert sources.display is display
    assert sources.system_audio is None
    assert sources.audio_tracks == [microphone]


# ---------------------------------------------------------------- pipeline


def make_pipeline(tmp_path: Path, clock: FakeClock, *, uploader=None, watermark=None, microphone=True):
    sources = CaptureSources(
        display=FakeTrack("video"),
        system_audio=FakeTrack("audio"),
        microphone=FakeTrack("audio") if microphone else None,
    )
    config = EngineConfig(recordings_dir=tmp_path, watermark_text=watermark)
    pipeline = CapturePipeline(
        config,
        uploader=uploader,
        acquire=lambda _config: sources,
        recorder_factory=lambda sink: SegmentRecorder(sink, recorder_factory=FakeMediaRecorder),
        monotonic=clock.now,
    )
    return pipeline, sources


@pytest.mark.asyncio
async def test_stop_uploads_and_releases_sources(tmp_path: Path, clock: FakeClock) -> None:
    uploads = []

    async def uploader(data: bytes, name: str, mime: str) -> str:
        uploads.append((data, name, mime))
        return "https://cdn.example/rec.mkv"

    pipeline, sources = make_pipeline(tmp_path, clock, uploader=uploader)
    session = await pipeline.start()
    assert isinstance(session.audio, AudioMixerTrack)
    assert session.video is sources.display
    assert pipeline.recording is True

    result = await pipeline.stop()

    assert result.url == "https://cdn.example/rec.mkv"
    assert result.path is None
    assert result.size == len(b"headercluster")
    assert uploads[0][0] == b"headercluster"
    assert uploads[0][1].endswith(".mkv")
    assert uploads[0][2] == "video/x-matroska"
    assert all(track.stopped for track in sources.tracks())
    assert pipeline.recording is False
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_failed_upload_falls_back_to_local_save(tmp_path: Path, clock: FakeClock) -> None:
    async def uploader(data: bytes, name: str, mime: str) -> str:
        raise UploadError("storage offline")

    pipeline, _ = make_pipeline(tmp_path, clock, uploader=uploader)
    await pipeline.start()

    result = await pipeline.stop()

    assert result.url is None
    assert result.path.parent == tmp_path
    assert result.path.read_bytes() == b"headercluster"


@pytest.mark.asyncio
async def test_concurrent_stops_share_one_cleanup(tmp_path: Path, clock: FakeClock) -> None:
    pipeline, _ = make_pipeline(tmp_path, clock)
    session = await pipeline.start()
    fake_recorder = session.recorder._recorder

    first, second = await asyncio.gather(pipeline.stop(), pipeline.stop())

    assert first is second
    assert fake_recorder.stops == 1
    assert await pipeline.stop() is first
    assert len(list(tmp_path.iterdir())) == 1


@pytest.mark.asyncio
async def test_display_ending_stops_the_recording(tmp_path: Path, clock: FakeClock) -> None:
    pipeline, sources = make_pipeline(tmp_path, clock)
    await pipeline.start()

    sources.display.stop()
    result = await asyncio.wait_for(pipeline.wait_stopped(), timeout=1.0)

    assert result.reason == "source-ended"
    assert result.path is not None
    assert sources.microphone.stopped is True


@pytest.mark.asyncio
async def test_watermark_and_single_audio_source(tmp_path: Path, clock: FakeClock) -> None:
    pipeline, sources = make_pipeline(tmp_path, clock, watermark="brand", microphone=False)

    session = await pipeline.start()

    assert isinstance(session.video, WatermarkTrack)
    assert session.audio is sources.system_audio
    assert session.mixer is None
    with pytest.raises(RuntimeError):
        await pipeline.start()
    await pipeline.stop()
    assert session.compositor.readyState == "ended"


@pytest.mark.asyncio
async def test_malformed_upload_response_falls_back_to_local_save(tmp_path: Path, clock: FakeClock) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    api = RestClient("https://hub.example/api", transport=httpx.MockTransport(handler))
    pipeline, _ = make_pipeline(tmp_path, clock, uploader=rest_uploader(api, "s1"))
    await pipeline.start()

    result = await pipeline.stop()
    await api.aclose()

    assert result.url is None
    assert result.path.read_bytes() == b"headercluster"


@pytest.mark.asyncio
async def test_unexpected_uploader_error_still_saves_locally(tmp_path: Path, clock: FakeClock) -> None:
    async def uploader(data: bytes, name: str, mime: str) -> str:
        raise ConnectionResetError("peer went away")

    pipeline, _ = make_pipeline(tmp_path, clock, uploader=uploader)
    await pipeline.start()

    result = await pipeline.stop()

    assert result.path is not None
    assert len(list(tmp_path.iterdir())) == 1


@pytest.mark.asyncio
async def test_stop_before_start_does_nothing(tmp_path: Path, clock: FakeClock) -> None:
    pipeline, sources = make_pipeline(tmp_path, clock)

    assert await pipeline.stop() is None
    assert pipeline.recording is False
    assert not any(track.stopped for track in sources.tracks())
