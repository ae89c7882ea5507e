"""
Audio mixer: lays the scene's audio tracks under a rendered video.

Each track is fetched into the job's work directory, shifted to its start
frame, scaled by its volume (constant, or sampled once per frame), sped up or
slowed down with chained atempo filters and mixed with amix. The video stream
is copied untouched; audio is encoded with the configured AAC settings.

Mixing is best effort. Every failure surfaces as AudioMixFailure and the
orchestrator keeps the silent video.
"""
from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import List, Optional, Sequence, Union
from urllib.parse import unquote, urlparse

import aiofiles
import aiohttp
from aiohttp import ClientTimeout

from config import AUDIO_BITRATE, AUDIO_CODEC, AUDIO_DOWNLOAD_TIMEOUT, AUDIO_SAMPLE_RATE
from framecast.codecs import audio_args
from framecast.errors import AudioMixFailure, EncodingFailure
from framecast.models import AudioTrackDescriptor
from framecast.renderer.encoder import FFmpegRunner
from utils.logger import setup_logger

logger = setup_logger(__name__)


def should_mix(job, worker_count: int, tracks: Sequence[AudioTrackDescriptor]) -> bool:
    """
    Mix only when the job wants audio, the codec carries it, the output is a
    video and exactly one worker rendered it. Parallel renders stay silent.
    """
    if job.muted or job.image_sequence or not job.profile.supports_audio:
        return False
    if worker_count != 1:
        return False
    return any(not track.muted and track.source_url for track in tracks)


def atempo_chain(rate: float) -> List[str]:
    """atempo accepts 0.5-2.0 per instance, so extreme rates are chained."""
    if rate <= 0:
        raise ValueError(f"playback rate must be positive, got {rate}")
    filters = []
    while rate > 2.0:
        filters.append("atempo=2.0")
        rate /= 2.0
    while rate < 0.5:
        filters.append("atempo=0.5")
        rate /= 0.5
    if abs(rate - 1.0) > 1e-9:
        filters.append(f"atempo={rate:g}")
    return filters


def volume_filter(volume: Union[float, List[float]], fps: int) -> Optional[str]:
    """
    Constant volume -> `volume=0.5`. A per-frame envelope becomes a piecewise
    expression in the track's own time base, re-evaluated every audio frame.
    Runs of equal samples are merged into one branch.
    """
    if not isinstance(volume, list):
        if volume == 1:
            return None
        return f"volume={volume:g}"

    if not volume:
        return None

    runs = []  # (end_frame_exclusive, value)
    for index, value in enumerate(volume):
        if runs and runs[-1][1] == value:
            runs[-1] = (index + 1, value)
        else:
            runs.append((index + 1, value))

    if len(runs) == 1:
        return volume_filter(runs[0][1], fps)

    expression = f"{runs[-1][1]:g}"
    for end, value in reversed(runs[:-1]):
        expression = f"if(lt(t,{end / fps:.6f}),{value:g},{expression})"
    return f"volume='{expression}':eval=frame"


def build_filter_graph(
    tracks: Sequence[AudioTrackDescriptor],
    fps: int,
    first_frame: int = 0,
    input_offset: int = 1,
) -> str:
    """
    filter_complex for `tracks`, whose inputs start at `input_offset`
    (input 0 is the video). The mixed stream is labelled [aout].
    """
    parts = []
    labels = []
    for i, track in enumerate(tracks):
        chain = atempo_chain(track.playback_rate)

        # Frames of the track that fall before the rendered range are skipped
        skip_frames = max(first_frame - track.start_frame, 0)
        if skip_frames:
            chain.append(f"atrim=start={skip_frames / fps:.6f}")
            chain.append("asetpts=PTS-STARTPTS")

        if track.end_frame is not None:
            length = track.end_frame - max(track.start_frame, first_frame) + 1
            chain.append(f"atrim=duration={max(length, 0) / fps:.6f}")

        volume = track.volume
        if isinstance(volume, list) and skip_frames:
            volume = volume[skip_frames:]
        vol = volume_filter(volume, fps)
        if vol:
            chain.append(vol)

        delay_ms = round(max(track.start_frame - first_frame, 0) / fps * 1000)
        if delay_ms:
            chain.append(f"adelay={delay_ms}|{delay_ms}")

        if not chain:
            chain.append("anull")
        label = f"a{i}"
        parts.append(f"[{i + input_offset}:a]{','.join(chain)}[{label}]")
        labels.append(f"[{label}]")

    if len(labels) == 1:
        parts[-1] = parts[-1][: -len(labels[0])] + "[aout]"
    else:
        parts.append(f"{''.join(labels)}amix=inputs={len(labels)}:duration=longest[aout]")
    return ";".join(parts)


class AudioMixer:
    """Fetches audio sources and muxes them under a video with one ffmpeg call."""

    def __init__(
        self,
        ffmpeg: Optional[FFmpegRunner] = None,
        download_timeout: int = AUDIO_DOWNLOAD_TIMEOUT,
        codec: str = AUDIO_CODEC,
        bitrate: str = AUDIO_BITRATE,
        sample_rate: int = AUDIO_SAMPLE_RATE,
    ):
        self.ffmpeg = ffmpeg or FFmpegRunner()
        self.download_timeout = download_timeout
        self.codec = codec
        self.bitrate = bitrate
        self.sample_rate = sample_rate

    async def fetch(self, source: str, dest_dir: str, index: int) -> str:
        """Copy or download one audio source into dest_dir."""
        parsed = urlparse(source)
        ext = os.path.splitext(parsed.path)[1] or ".mp3"
        local_path = os.path.join(dest_dir, f"audio-{index}{ext}")

        if parsed.scheme in ("http", "https"):
            logger.debug(f"[audio] Downloading track {index}: {source}")
            timeout = ClientTimeout(total=self.download_timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(source) as resp:
                    if resp.status != 200:
                        raise AudioMixFailure(f"Failed to download audio ({resp.status}): {source}")
                    async with aiofiles.open(local_path, "wb") as f:
                        async for chunk in resp.content.iter_chunked(64 * 1024):
                            await f.write(chunk)
            return local_path

        path = unquote(parsed.path) if parsed.scheme == "file" else source
        if not os.path.isfile(path):
            raise AudioMixFailure(f"Audio file not found: {source}")
        async with aiofiles.open(path, "rb") as src, aiofiles.open(local_path, "wb") as dst:
            await dst.write(await src.read())
        return local_path

    async def mix(
        self,
        video_path: str,
        tracks: Sequence[AudioTrackDescriptor],
        output_path: str,
        fps: int,
        total_frames: Optional[int] = None,
        first_frame: int = 0,
        work_dir: Optional[str] = None,
        audio_codec: Optional[str] = None,
    ) -> str:
        """
        Write `output_path`: the video stream of `video_path` plus the mixed tracks.
        `audio_codec` is the encoder the output container needs, falling back to
        the mixer default.

        Raises:
            AudioMixFailure: any fetch or ffmpeg problem
        """
        tracks = [t for t in tracks if not t.muted and t.source_url]
        if not tracks:
            raise AudioMixFailure("no audible tracks to mix")

        work_dir = work_dir or str(Path(output_path).parent)
        Path(work_dir).mkdir(parents=True, exist_ok=True)
        logger.info(f"[audio] Mixing {len(tracks)} track(s) into {output_path}")

        try:
            inputs = ["-i", str(video_path)]
            for index, track in enumerate(tracks):
                local = await self.fetch(track.source_url, work_dir, index)
                if track.loop:
                    inputs += ["-stream_loop", "-1"]
                inputs += ["-i", local]

            args = inputs + [
                "-filter_complex", build_filter_graph(tracks, fps, first_frame=first_frame),
                "-map", "0:v:0",
                "-map", "[aout]",
                "-c:v", "copy",
                *audio_args(audio_codec or self.codec, self.bitrate, self.sample_rate),
            ]
            if total_frames is not None:
                # Looping inputs are infinite; the video length bounds the output
                args += ["-t", f"{total_frames / fps:.6f}"]
            args.append(str(output_path))

            await self.ffmpeg.run(args, stage="audio")
        except AudioMixFailure:
            raise
        except (EncodingFailure, aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
            raise AudioMixFailure(f"Audio mixing failed: {exc}") from exc

        logger.info(f"[audio] ✅ Audio mixed into {output_path}")
        return str(output_path)
