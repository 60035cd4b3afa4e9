"""
Capture and composite recording pipeline.
"""

from .mixers import AudioMixerTrack, MixerLayer
from .overlay import ClockOverlay, OverlayChain, TextOverlay, WatermarkTrack
from .pipeline import CapturePipeline, CaptureSession, RecordingResult, rest_uploader
from .recorder import Segment, SegmentRecorder, SegmentSink
from .sources import CaptureSources, acquire_participant_media, acquire_sources

__all__ = [
    "AudioMixerTrack",
    "CapturePipeline",
    "CaptureSession",
    "CaptureSources",
    "ClockOverlay",
    "MixerLayer",
    "OverlayChain",
    "RecordingResult",
    "Segment",
    "SegmentRecorder",
    "SegmentSink",
    "TextOverlay",
    "WatermarkTrack",
    "acquire_participant_media",
    "acquire_sources",
    "rest_uploader",
]
