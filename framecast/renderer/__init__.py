"""
Renderer subpackage init.
Expose the per-instance building blocks. The orchestrator lives in
framecast.renderer.orchestrator and is imported from there.
"""
from .readiness import DelayHandle, ReadinessRegistry
from .frame_driver import FrameDriver, ReadyToken, launch_frame_driver
from .encoder import EncoderSession, FFmpegRunner, ImageSequenceWriter, run_ffmpeg
from .worker import render_range

__all__ = [
    "DelayHandle",
    "ReadinessRegistry",
    "FrameDriver",
    "ReadyToken",
    "launch_frame_driver",
    "EncoderSession",
    "FFmpegRunner",
    "ImageSequenceWriter",
    "run_ffmpeg",
    "render_range",
]
