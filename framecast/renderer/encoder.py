"""
ffmpeg processes: streaming encoder sessions, one-shot invocations and the
image sequence writer.

An EncoderSession owns one ffmpeg process that reads encoded stills from
stdin (image2pipe) and writes one output file. Frames must arrive in strict
ascending order without gaps; ffmpeg assigns timestamps by arrival order.
"""
from __future__ import annotations

import asyncio
import os
from collections import deque
from pathlib import Path
from typing import List, Optional

import aiofiles

from config import CAPTURE_FORMAT, CAPTURE_QUALITY, FFMPEG_BINARY
from framecast.codecs import encoding_args
from framecast.errors import EncodingFailure
from utils.logger import setup_logger

logger = setup_logger(__name__)

STDERR_TAIL_LINES = 10


def _tail(lines) -> str:
    return "\n".join(list(lines)[-STDERR_TAIL_LINES:])


class EncoderSession:
    """One ffmpeg process fed frame by frame over its stdin."""

    def __init__(
        self,
        output_args: List[str],
        output_path: str,
        fps: int,
        stage: str = "encode",
        ffmpeg_binary: str = FFMPEG_BINARY,
        image_format: str = CAPTURE_FORMAT,
        quality: Optional[int] = CAPTURE_QUALITY,
    ):
        self.output_args = list(output_args)
        self.output_path = str(output_path)
        self.fps = fps
        self.stage = stage
        self.ffmpeg_binary = ffmpeg_binary
        # Format the worker should capture frames in for this sink
        self.image_format = image_format
        self.quality = quality if image_format == "jpeg" else None

        self.process: Optional[asyncio.subprocess.Process] = None
        self.frames_written = 0
        self._next_frame: Optional[int] = None
        self._stderr_lines: deque = deque(maxlen=200)
        self._stderr_task: Optional[asyncio.Task] = None

    def command(self) -> List[str]:
        return [
            self.ffmpeg_binary,
            "-hide_banner",
            "-loglevel", "error",
            "-y",
            "-f", "image2pipe",
            "-framerate", str(self.fps),
            "-i", "-",
            *self.output_args,
            self.output_path,
        ]

    async def start(self) -> None:
        cmd = self.command()
        logger.debug(f"[{self.stage}] Command: {' '.join(cmd)}")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise EncodingFailure(
                f"could not start {self.ffmpeg_binary}: {exc}", stage=self.stage
            ) from exc
        self._stderr_task = asyncio.create_task(self._read_stderr())

    async def _read_stderr(self) -> None:
        async for line in self.process.stderr:
            self._stderr_lines.append(line.decode("utf-8", errors="replace").rstrip())

    async def write_frame(self, frame: int, data: bytes) -> None:
        """Pipe one encoded still into ffmpeg, waiting while the pipe is full."""
        if self.process is None:
            raise EncodingFailure("write_frame() before start()", stage=self.stage)
        if self._next_frame is not None and frame != self._next_frame:
            raise EncodingFailure(
                f"frames must be written in order: expected {self._next_frame}, got {frame}",
                stage=self.stage,
            )
        try:
            self.process.stdin.write(data)
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            returncode = await self.process.wait()
            await self._finish_stderr()
            raise EncodingFailure(
                f"ffmpeg closed its input at frame {frame} (exit code {returncode})",
                stage=self.stage,
                returncode=returncode,
                stderr_tail=_tail(self._stderr_lines),
            ) from exc
        self._next_frame = frame + 1
        self.frames_written += 1

    async def close(self) -> str:
        """Finish the stream and wait for ffmpeg. Returns the output path."""
        if self.process is None:
            raise EncodingFailure("close() before start()", stage=self.stage)
        try:
            self.process.stdin.close()
            await self.process.stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            pass
        returncode = await self.process.wait()
        await self._finish_stderr()
        if returncode != 0:
            tail = _tail(self._stderr_lines)
            logger.error(f"[{self.stage}] ffmpeg failed (code {returncode}): {tail}")
            raise EncodingFailure(
                f"ffmpeg exited with code {returncode}",
                stage=self.stage,
                returncode=returncode,
                stderr_tail=tail,
            )
        logger.debug(f"[{self.stage}] {self.frames_written} frames -> {self.output_path}")
        return self.output_path

    async def abort(self) -> None:
        """Kill ffmpeg if it is still running. The partial output is left to the caller."""
        if self.process is None:
            return
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            await self.process.wait()
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
        logger.debug(f"[{self.stage}] Aborted after {self.frames_written} frames")

    async def _finish_stderr(self) -> None:
        if self._stderr_task is not None:
            await self._stderr_task


class ImageSequenceWriter:
    """Frame sink writing one still per frame: frame-0042.png, frame-0043.png..."""

    def __init__(
        self,
        out_dir: str,
        image_format: str = "png",
        quality: Optional[int] = None,
        padding: int = 4,
    ):
        self.out_dir = str(out_dir)
        self.image_format = image_format
        self.quality = quality if image_format == "jpeg" else None
        self.padding = padding
        self.extension = "jpg" if image_format == "jpeg" else image_format
        self.frames_written = 0
        self._next_frame: Optional[int] = None

    def frame_path(self, frame: int) -> str:
        return os.path.join(self.out_dir, f"frame-{frame:0{self.padding}d}.{self.extension}")

    async def start(self) -> None:
        Path(self.out_dir).mkdir(parents=True, exist_ok=True)

    async def write_frame(self, frame: int, data: bytes) -> None:
        if self._next_frame is not None and frame != self._next_frame:
            raise EncodingFailure(
                f"frames must be written in order: expected {self._next_frame}, got {frame}",
                stage="sequence",
            )
        async with aiofiles.open(self.frame_path(frame), "wb") as f:
            await f.write(data)
        self._next_frame = frame + 1
        self.frames_written += 1

    async def close(self) -> str:
        return self.out_dir

    async def abort(self) -> None:
        logger.debug(f"[sequence] Aborted after {self.frames_written} frames in {self.out_dir}")


async def run_ffmpeg(args: List[str], stage: str, ffmpeg_binary: str = FFMPEG_BINARY) -> None:
    """
    Run one ffmpeg command to completion.

    Raises:
        EncodingFailure: ffmpeg could not start or exited non-zero. The last
            lines of stderr are attached as stderr_tail.
    """
    cmd = [ffmpeg_binary, "-hide_banner", "-loglevel", "error", "-y", *args]
    logger.debug(f"[{stage}] Command: {' '.join(cmd)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise EncodingFailure(f"could not start {ffmpeg_binary}: {exc}", stage=stage) from exc

    _, stderr = await process.communicate()
    if process.returncode != 0:
        tail = _tail(stderr.decode("utf-8", errors="replace").splitlines())
        logger.error(f"[{stage}] ffmpeg failed (code {process.returncode}): {tail}")
        raise EncodingFailure(
            f"ffmpeg exited with code {process.returncode}",
            stage=stage,
            returncode=process.returncode,
            stderr_tail=tail,
        )


def video_encoder(
    codec: str,
    output_path: str,
    fps: int,
    crf: Optional[int] = None,
    bitrate: Optional[str] = None,
    prores_profile: str = "hq",
    ffmpeg_binary: str = FFMPEG_BINARY,
    stage: str = "encode",
) -> EncoderSession:
    """Encoder session producing `output_path` in a single-pass video codec."""
    args = encoding_args(codec, crf=crf, bitrate=bitrate, prores_profile=prores_profile)
    return EncoderSession(args, output_path, fps, stage=stage, ffmpeg_binary=ffmpeg_binary)


def lossless_intermediate(
    output_path: str,
    fps: int,
    ffmpeg_binary: str = FFMPEG_BINARY,
    stage: str = "intermediate",
) -> EncoderSession:
    """PNG-in-Matroska session; input to the two palette passes of a GIF."""
    return EncoderSession(
        ["-c:v", "png", "-f", "matroska"],
        output_path,
        fps,
        stage=stage,
        ffmpeg_binary=ffmpeg_binary,
        image_format="png",
    )


class FFmpegRunner:
    """
    Factory for every ffmpeg process a render needs.

    The orchestrator and the audio mixer only talk to ffmpeg through this
    object, so tests can swap it for a fake.
    """

    def __init__(self, binary: str = FFMPEG_BINARY):
        self.binary = binary

    def video_encoder(self, job, output_path: str, stage: str = "encode") -> EncoderSession:
        return video_encoder(
            job.codec,
            output_path,
            job.fps,
            crf=job.crf,
            bitrate=job.bitrate,
            prores_profile=job.prores_profile,
            ffmpeg_binary=self.binary,
            stage=stage,
        )

    def lossless_intermediate(self, output_path: str, fps: int, stage: str = "intermediate") -> EncoderSession:
        return lossless_intermediate(output_path, fps, ffmpeg_binary=self.binary, stage=stage)

    async def run(self, args: List[str], stage: str) -> None:
        await run_ffmpeg(args, stage, ffmpeg_binary=self.binary)
