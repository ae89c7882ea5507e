"""
Codec table and ffmpeg argument builders.

Each codec id maps to a fixed CodecProfile. Palette-based output (gif) never
accepts crf and is always encoded with the two-pass palette technique by the
orchestrator, so it has no single-pass argument builder here.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from config import AUDIO_BITRATE, AUDIO_CODEC, AUDIO_SAMPLE_RATE, PRESET
from framecast.errors import RenderValidationError

OPUS_SAMPLE_RATES = (48000, 24000, 16000, 12000, 8000)

PRORES_PROFILES = {
    "proxy": 0,
    "lt": 1,
    "standard": 2,
    "hq": 3,
    "4444": 4,
    "4444xq": 5,
}


@dataclass(frozen=True)
class CodecProfile:
    """Static description of one output codec."""

    codec_id: str
    label: str
    encoder_name: str
    container_extension: str
    pixel_format: str
    supports_crf: bool
    supports_audio: bool
    palette_based: bool = False
    audio_codec: Optional[str] = "aac"
    default_crf: Optional[int] = None
    crf_range: Tuple[int, int] = (0, 51)
    description: str = ""


CODECS: Dict[str, CodecProfile] = {
    "h264": CodecProfile(
        codec_id="h264",
        label="H.264",
        encoder_name="libx264",
        container_extension="mp4",
        pixel_format="yuv420p",
        supports_crf=True,
        supports_audio=True,
        default_crf=18,
        description="Most compatible format, good quality/size ratio",
    ),
    "h265": CodecProfile(
        codec_id="h265",
        label="H.265 (HEVC)",
        encoder_name="libx265",
        container_extension="mp4",
        pixel_format="yuv420p",
        supports_crf=True,
        supports_audio=True,
        default_crf=23,
        description="Better compression than H.264, less compatible",
    ),
    "vp8": CodecProfile(
        codec_id="vp8",
        label="VP8",
        encoder_name="libvpx",
        container_extension="webm",
        pixel_format="yuv420p",
        supports_crf=True,
        supports_audio=True,
        default_crf=10,
        crf_range=(4, 63),
        audio_codec="libopus",
        description="WebM format, good for web",
    ),
    "vp9": CodecProfile(
        codec_id="vp9",
        label="VP9",
        encoder_name="libvpx-vp9",
        container_extension="webm",
        pixel_format="yuv420p",
        supports_crf=True,
        supports_audio=True,
        default_crf=31,
        crf_range=(0, 63),
        audio_codec="libopus",
        description="WebM format, better compression than VP8",
    ),
    "prores": CodecProfile(
        codec_id="prores",
        label="ProRes",
        encoder_name="prores_ks",
        container_extension="mov",
        pixel_format="yuv422p10le",
        supports_crf=False,
        supports_audio=True,
        description="Professional editing format",
    ),
    "gif": CodecProfile(
        codec_id="gif",
        label="GIF",
        encoder_name="gif",
        container_extension="gif",
        pixel_format="rgb8",
        supports_crf=False,
        supports_audio=False,
        palette_based=True,
        audio_codec=None,
        description="Animated GIF, 256-colour global palette",
    ),
}


def get_codec_profile(codec: str) -> CodecProfile:
    """Look up a codec profile, rejecting unknown ids."""
    profile = CODECS.get(codec)
    if profile is None:
        raise RenderValidationError(
            f"Unknown codec: {codec}. Available codecs: {', '.join(CODECS)}"
        )
    return profile


def list_codecs() -> List[dict]:
    return [
        {
            "id": profile.codec_id,
            "name": profile.label,
            "extension": profile.container_extension,
            "description": profile.description,
            "supportsCrf": profile.supports_crf,
            "supportsAudio": profile.supports_audio,
        }
        for profile in CODECS.values()
    ]


def encoding_args(
    codec: str,
    crf: Optional[int] = None,
    bitrate: Optional[str] = None,
    preset: str = PRESET,
    prores_profile: str = "hq",
) -> List[str]:
    """
    Build the ffmpeg output-side arguments for a single-pass video codec.

    Args:
        codec: codec id from CODECS (gif is rejected, it needs two passes)
        crf: constant rate factor, falls back to the codec default
        bitrate: target bitrate (e.g. "5M"); replaces crf when given
        preset: x264/x265 speed preset
        prores_profile: one of PRORES_PROFILES

    Returns:
        List of ffmpeg arguments (without the output path)
    """
    profile = get_codec_profile(codec)
    if profile.palette_based:
        raise ValueError(f"{codec} is palette based and has no single-pass encoding")

    quality = str(crf if crf is not None else profile.default_crf)

    if codec == "h264":
        args = ["-c:v", "libx264", "-pix_fmt", profile.pixel_format, "-preset", preset]
        args += ["-b:v", bitrate] if bitrate else ["-crf", quality]
        return args + ["-movflags", "+faststart"]

    if codec == "h265":
        args = ["-c:v", "libx265", "-pix_fmt", profile.pixel_format, "-preset", preset]
        args += ["-b:v", bitrate] if bitrate else ["-crf", quality]
        # hvc1 tag for Apple players
        return args + ["-tag:v", "hvc1"]

    if codec == "vp8":
        return [
            "-c:v", "libvpx",
            "-pix_fmt", profile.pixel_format,
            "-crf", quality,
            "-b:v", bitrate or "5M",
            "-deadline", "good",
            "-cpu-used", "2",
        ]

    if codec == "vp9":
        args = ["-c:v", "libvpx-vp9", "-pix_fmt", profile.pixel_format]
        # -b:v 0 selects constant quality mode
        args += ["-b:v", bitrate] if bitrate else ["-crf", quality, "-b:v", "0"]
        return args + ["-deadline", "good", "-cpu-used", "2", "-row-mt", "1"]

    # prores
    profile_number = PRORES_PROFILES.get(prores_profile, PRORES_PROFILES["hq"])
    return [
        "-c:v", "prores_ks",
        "-profile:v", str(profile_number),
        "-pix_fmt", profile.pixel_format,
        "-vendor", "apl0",
    ]


def audio_args(
    codec: str = AUDIO_CODEC,
    bitrate: str = AUDIO_BITRATE,
    sample_rate: int = AUDIO_SAMPLE_RATE,
) -> List[str]:
    """Audio encoder arguments. Opus only accepts its own sample rates."""
    if codec == "libopus" and sample_rate not in OPUS_SAMPLE_RATES:
        sample_rate = 48000
    return ["-c:a", codec, "-b:a", bitrate, "-ar", str(sample_rate)]


def palette_filters(fps: int, width: int, height: int) -> Tuple[str, str]:
    """Filter graphs for the palettegen pass and the paletteuse pass of a GIF."""
    scale = f"fps={fps},scale={width}:{height}:flags=lanczos"
    generate = f"{scale},palettegen=max_colors=256"
    apply = f"{scale}[x];[x][1:v]paletteuse=dither=sierra2_4a"
    return generate, apply
