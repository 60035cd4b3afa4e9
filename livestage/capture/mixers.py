"""
Audio mixing for capture.

Every layer is resampled to one common format, buffered, and summed with its
gain into fixed-size output frames.
"""

from __future__ import annotations

import asyncio
import fractions
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

LOG = logging.getLogger(__name__)

SAMPLE_RATE = 48000
LAYOUT = "stereo"
CHANNELS = 2
FRAME_SAMPLES = 960


@dataclass
class MixerLayer:
    track: MediaStreamTrack
    gain: float = 1.0
    name: str = ""
    buffer: np.ndarray = field(default_factory=lambda: np.zeros((CHANNELS, 0), dtype=np.int32))
    resampler: Optional[av.AudioResampler] = None
    ended: bool = False

    def __post_init__(self) -> None:
        if self.resampler is None:
            self.resampler = av.AudioResampler(format="s16p", layout=LAYOUT, rate=SAMPLE_RATE)

    def push(self, frame: av.AudioFrame) -> None:
        for resampled in self.resampler.resample(frame):
            samples = resampled.to_ndarray().astype(np.int32)
            self.buffer = np.concatenate([self.buffer, samples], axis=1)

    def take(self, count: int) -> np.ndarray:
        if self.buffer.shape[1] < count:
            padding = np.zeros((CHANNELS, count - self.buffer.shape[1]), dtype=np.int32)
            self.buffer = np.concatenate([self.buffer, padding], axis=1)
        chunk, self.buffer = self.buffer[:, :count], self.buffer[:, count:]
        return chunk


class AudioMixerTrack(MediaStreamTrack):
    """
    Sums several audio tracks into one.

    A layer whose source ends is dropped; the mixer ends once no layer is
    left.
    """

    kind = "audio"

    def __init__(self, layers: Optional[List[MixerLayer]] = None) -> None:
        super().__init__()
        self.layers: List[MixerLayer] = list(layers or [])
        self._timestamp = 0
        self._time_base = fractions.Fraction(1, SAMPLE_RATE)

    def add_layer(self, layer: MixerLayer) -> None:
        self.layers.append(layer)

    def clear(self) -> None:
        self.layers.clear()

    async def recv(self) -> av.AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError
        await asyncio.gather(*(self._fill(layer) for layer in self.layers))
        live = [layer for layer in self.layers if not layer.ended or layer.buffer.shape[1]]
        if not live:
            self.stop()
            raise MediaStreamError

        mixed = np.zeros((CHANNELS, FRAME_SAMPLES), dtype=np.float64)
        for layer in live:
            mixed += layer.take(FRAME_SAMPLES) * layer.gain
        self.layers = [layer for layer in self.layers if not layer.ended or layer.buffer.shape[1]]

        samples = np.clip(mixed, -32768, 32767).astype(np.int16)
        frame = av.AudioFrame.from_ndarray(samples, format="s16p", layout=LAYOUT)
        frame.sample_rate = SAMPLE_RATE
        frame.pts = self._timestamp
        frame.time_base = self._time_base
        self._timestamp += FRAME_SAMPLES
        return frame

    async def _fill(self, layer: MixerLayer) -> None:
        while not layer.ended and layer.buffer.shape[1] < FRAME_SAMPLES:
            try:
                frame = await layer.track.recv()
            except MediaStreamError:
                LOG.info("Mixer layer %s ended", layer.name or layer.track.id)
                layer.ended = True
                return
            layer.push(frame)
