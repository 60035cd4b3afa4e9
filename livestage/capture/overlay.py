"""
Watermark compositing.

``WatermarkTrack`` samples the latest frame of its source in a background
loop and, at a fixed frame rate, paints it with the overlay chain onto an
off-screen Pillow image that becomes the outgoing frame.
"""

from __future__ import annotations

import asyncio
import fractions
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import VideoFrame
from PIL import Image, ImageDraw, ImageFont

LOG = logging.getLogger(__name__)

VIDEO_CLOCK_RATE = 90000
DEFAULT_SIZE = (1280, 720)
Position = Tuple[int, int]


@dataclass
class TextOverlay:
    text: str
    position: Position = (24, 24)
    fill: Tuple[int, int, int, int] = (255, 255, 255, 200)
    shadow: Optional[Tuple[int, int, int, int]] = (0, 0, 0, 160)

    def render(self, draw: ImageDraw.ImageDraw, size: Tuple[int, int], now: datetime) -> None:
        self._draw_text(draw, self.text, self.position)

    def _draw_text(self, draw: ImageDraw.ImageDraw, text: str, position: Position) -> None:
        font = ImageFont.load_default()
        x, y = position
        if self.shadow is not None:
            draw.text((x + 1, y + 1), text, font=font, fill=self.shadow)
        draw.text((x, y), text, font=font, fill=self.fill)


@dataclass
class ClockOverlay(TextOverlay):
    """Timestamp anchored to the bottom right corner."""

    text: str = "%Y-%m-%d %H:%M:%S"
    margin: int = 24

    def render(self, draw: ImageDraw.ImageDraw, size: Tuple[int, int], now: datetime) -> None:
        label = now.strftime(self.text)
        left, top, right, bottom = draw.textbbox((0, 0), label, font=ImageFont.load_default())
        width, height = size
        position = (width - (right - left) - self.margin, height - (bottom - top) - self.margin)
        self._draw_text(draw, label, position)


class OverlayChain:
    """Overlays applied to each composited frame in insertion order."""

    def __init__(self, overlays: Optional[List[TextOverlay]] = None) -> None:
        self.overlays: List[TextOverlay] = list(overlays or [])

    def add_overlay(self, overlay: TextOverlay) -> None:
        self.overlays.append(overlay)

    def clear(self) -> None:
        self.overlays.clear()

    def apply(self, image: Image.Image, now: Optional[datetime] = None) -> Image.Image:
        if not self.overlays:
            return image
        now = now or datetime.now()
        layer = Image.new("RGBA", image.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)
        for overlay in self.overlays:
            overlay.render(draw, image.size, now)
        return Image.alpha_composite(image.convert("RGBA"), layer).convert("RGB")

    @classmethod
    def watermark(cls, text: Optional[str], *, clock: bool = True) -> "OverlayChain":
        chain = cls()
        if text:
            chain.add_overlay(TextOverlay(text))
        if clock:
            chain.add_overlay(ClockOverlay())
        return chain


class WatermarkTrack(MediaStreamTrack):
    kind = "video"

    def __init__(
        self,
        source: MediaStreamTrack,
        chain: OverlayChain,
        *,
        frame_rate: int = 30,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self.source = source
        self.chain = chain
        self.frame_rate = max(1, int(frame_rate))
        self._monotonic = monotonic
        self._latest: Optional[Image.Image] = None
        self._first_frame = asyncio.Event()
        self._start: Optional[float] = None
        self._count = 0
        self._sampler: Optional[asyncio.Task] = None
        self.source_ended = False

    @property
    def sampling(self) -> bool:
        return self._sampler is not None and not self._sampler.done()

    def start(self) -> None:
        if self._sampler is None:
            self._sampler = asyncio.ensure_future(self._sample())

    async def _sample(self) -> None:
        try:
            while True:
                frame = await self.source.recv()
                self._latest = frame.to_image()
                self._first_frame.set()
        except MediaStreamError:
            self.source_ended = True
            LOG.info("Watermark source ended")
        finally:
            self._first_frame.set()

    async def recv(self) -> VideoFrame:
        if self.readyState != "live":
            raise MediaStreamError
        self.start()
        await self._first_frame.wait()
        if self.source_ended:
            self.stop()
            raise MediaStreamError

        await self._wait_for_tick()
        base = self._latest if self._latest is not None else Image.new("RGB", DEFAULT_SIZE)
        composed = self.chain.apply(base.convert("RGB"))
        frame = VideoFrame.from_image(composed)
        frame.pts = int(self._count * VIDEO_CLOCK_RATE / self.frame_rate)
        frame.time_base = fractions.Fraction(1, VIDEO_CLOCK_RATE)
        self._count += 1
        return frame

    async def _wait_for_tick(self) -> None:
        now = self._monotonic()
        if self._start is None:
            self._start = now
            return
        due = self._start + self._count / self.frame_rate
        if due > now:
            await asyncio.sleep(due - now)

    def stop(self) -> None:
        sampler, self._sampler = self._sampler, None
        if sampler is not None and not sampler.done():
            sampler.cancel()
        super().stop()
