"""
Render orchestrator.

Splits a job's frame range across 1..K render workers, each with its own
browser instance and its own sink, runs them concurrently and joins their
segments back together in frame order. Depending on the job the output is:

    video           workers encode segments, segments are concatenated with
                    the concat demuxer (stream copy), audio is mixed when a
                    single worker rendered the job
    gif             one worker writes a lossless PNG-in-Matroska intermediate,
                    then palettegen + paletteuse produce the GIF
    image sequence  one worker writes frame-NNNN.png/jpg straight into the
                    output directory

GIF and image sequence jobs ignore the requested concurrency.

A failing worker cancels its siblings; a partially rendered video is never
returned.
"""
from __future__ import annotations

import asyncio
import os
import shutil
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple

from config import (
    DEFAULT_HEIGHT,
    DEFAULT_WIDTH,
    FRONTEND_URL,
    GIF_LOOP,
    MAX_WORKERS,
    READINESS_TIMEOUT_MS,
    SCENE_LOAD_TIMEOUT_MS,
)
from framecast.codecs import palette_filters
from framecast.errors import AudioMixFailure, RenderError, RenderValidationError
from framecast.models import AudioTrackDescriptor, RenderJobSpec, RenderResult, Segment
from framecast.postprocessing.audio_mixer import AudioMixer, should_mix
from framecast.renderer.encoder import FFmpegRunner, ImageSequenceWriter
from framecast.renderer.frame_driver import (
    FrameDriver,
    ReadyState,
    build_scene_url,
    launch_frame_driver,
    validate_frontend_url,
)
from framecast.renderer.worker import render_range
from framecast.reporter import ProgressReporter
from utils.helpers import cleanup_temp_dir, create_temp_dir, file_summary
from utils.logger import setup_logger

logger = setup_logger(__name__)

DriverFactory = Callable[..., Awaitable[FrameDriver]]
SinkFactory = Callable[[int, int, int], object]


def partition_frames(start_frame: int, end_frame: int, k: int) -> List[Tuple[int, int, int]]:
    """
    Split [start_frame, end_frame] into K contiguous, disjoint ranges.

    Every range gets total // K frames and the last one also takes the
    remainder. K is capped at the number of frames so no range is empty.

    Returns:
        [(worker_index, start, end), ...] in frame order
    """
    total = end_frame - start_frame + 1
    if total <= 0:
        raise RenderValidationError(f"empty frame range {start_frame}-{end_frame}")
    if k < 1:
        raise RenderValidationError(f"worker count must be >= 1, got {k}")

    k = min(k, total)
    size = total // k
    ranges = []
    for index in range(k):
        first = start_frame + index * size
        last = end_frame if index == k - 1 else first + size - 1
        ranges.append((index, first, last))
    return ranges


class ProgressAggregator:
    """
    Combines per-worker progress into one monotonic count.

    Each worker only writes its own slot and slots only grow, so the sum
    never goes backwards no matter how worker callbacks interleave.
    """

    def __init__(
        self,
        total_frames: int,
        worker_count: int,
        on_update: Optional[Callable[[int, int], None]] = None,
    ):
        self.total_frames = total_frames
        self.slots = [0] * worker_count
        self.on_update = on_update

    @property
    def completed(self) -> int:
        return sum(self.slots)

    def update(self, worker_index: int, frames_done: int) -> int:
        if frames_done > self.slots[worker_index]:
            self.slots[worker_index] = frames_done
        completed = self.completed
        if self.on_update is not None:
            self.on_update(completed, self.total_frames)
        return completed


class RenderOrchestrator:
    """Runs render jobs end to end."""

    def __init__(
        self,
        driver_factory: Optional[DriverFactory] = None,
        ffmpeg: Optional[FFmpegRunner] = None,
        audio_mixer: Optional[AudioMixer] = None,
        frontend_url: str = FRONTEND_URL,
        max_workers: int = MAX_WORKERS,
        scene_load_timeout_ms: int = SCENE_LOAD_TIMEOUT_MS,
        readiness_timeout_ms: int = READINESS_TIMEOUT_MS,
    ):
        self.driver_factory = driver_factory or launch_frame_driver
        self.ffmpeg = ffmpeg or FFmpegRunner()
        self.audio_mixer = audio_mixer or AudioMixer(self.ffmpeg)
        self.frontend_url = validate_frontend_url(frontend_url)
        self.max_workers = max_workers
        self.scene_load_timeout_ms = scene_load_timeout_ms
        self.readiness_timeout_ms = readiness_timeout_ms

    # ------------------------------------------------------------------
    # Renderer instances
    # ------------------------------------------------------------------
    def scene_url(self, job: RenderJobSpec) -> str:
        return build_scene_url(
            self.frontend_url,
            job.composition_id,
            job.input_props,
            width=job.width,
            height=job.height,
            fps=job.fps,
            duration_in_frames=job.end_frame + 1,
        )

    def worker_count(self, job: RenderJobSpec) -> int:
        """GIF and image sequence jobs always render from a single page."""
        if job.image_sequence or job.profile.palette_based:
            return 1
        return max(1, min(job.concurrency, self.max_workers, job.total_frames))

    async def open_driver(self, job: RenderJobSpec, name: str) -> FrameDriver:
        driver = await self.driver_factory(
            width=job.width, height=job.height, scale=job.scale, name=name
        )
        try:
            await driver.load(self.scene_url(job), self.scene_load_timeout_ms)
        except BaseException:
            await driver.dispose()
            raise
        return driver

    async def probe_composition(self, composition_id: str, input_props: Optional[dict] = None) -> ReadyState:
        """Load a composition once and read the metadata it advertises."""
        driver = await self.driver_factory(
            width=DEFAULT_WIDTH, height=DEFAULT_HEIGHT, scale=1.0, name="probe"
        )
        try:
            url = build_scene_url(self.frontend_url, composition_id, input_props)
            return await driver.load(url, self.scene_load_timeout_ms)
        finally:
            await driver.dispose()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------
    async def render(self, job: RenderJobSpec, reporter: Optional[ProgressReporter] = None) -> RenderResult:
        """
        Render `job` to job.output_path.

        Raises:
            RenderError: any fatal failure (scene load, readiness, worker, encoder)
        """
        started = time.time()
        profile = job.profile
        workers = self.worker_count(job)
        output_path = Path(job.output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"🎬 Starting render: {job.composition_id}")
        logger.info(
            f"   {job.width}x{job.height} @ {job.fps}fps, {job.total_frames} frames "
            f"({job.start_frame}-{job.end_frame}), codec={job.codec}, workers={workers}"
        )
        if reporter is not None:
            reporter.status(f"Rendering {job.total_frames} frames with {workers} worker(s)")

        progress = ProgressAggregator(
            job.total_frames,
            workers,
            on_update=reporter.progress if reporter is not None else None,
        )

        work_dir = create_temp_dir(str(output_path.parent))
        segments: List[Segment] = []
        tracks: List[AudioTrackDescriptor] = []
        audio_mixed = False
        try:
            if job.image_sequence:
                padding = len(str(job.end_frame))
                segments, _ = await self._capture(
                    job,
                    workers,
                    lambda i, s, e: ImageSequenceWriter(
                        str(output_path), job.image_format, job.image_quality, padding=padding
                    ),
                    progress,
                    collect_audio=False,
                )

            elif profile.palette_based:
                segments, _ = await self._capture(
                    job,
                    workers,
                    lambda i, s, e: self.ffmpeg.lossless_intermediate(
                        str(work_dir / "frames.mkv"), job.fps, stage="intermediate"
                    ),
                    progress,
                    collect_audio=False,
                )
                await self._encode_gif(job, segments[0].file_path, work_dir, output_path, reporter)

            else:
                ext = profile.container_extension
                segments, scene_tracks = await self._capture(
                    job,
                    workers,
                    lambda i, s, e: self.ffmpeg.video_encoder(
                        job, str(work_dir / f"segment-{i}.{ext}"), stage=f"encode_{i}"
                    ),
                    progress,
                    collect_audio=not job.muted and profile.supports_audio,
                )
                video_path = await self._join(segments, work_dir / f"video.{ext}", reporter)
                audio_mixed = await self._finish_video(
                    job, video_path, output_path, scene_tracks, workers, work_dir, reporter
                )
                # Parallel renders forfeit audio, so their result lists no tracks
                if workers == 1:
                    tracks = scene_tracks
        finally:
            cleanup_temp_dir(work_dir)

        duration_ms = int((time.time() - started) * 1000)
        logger.info(f"✅ Render complete in {duration_ms / 1000:.1f}s: {output_path}")
        return RenderResult(
            output_path=str(output_path),
            codec=job.codec,
            total_frames=job.total_frames,
            worker_count=workers,
            segments=segments,
            audio_tracks=tracks,
            audio_mixed=audio_mixed,
            duration_ms=duration_ms,
        )

    async def render_still(
        self,
        job: RenderJobSpec,
        frame: int,
        output_path: str,
        image_format: str = "png",
        quality: Optional[int] = 80,
    ) -> str:
        """Capture one frame of `job`'s composition as an image."""
        if frame < 0:
            raise RenderValidationError(f"frame must be >= 0, got {frame}")
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"📸 Capturing still: {job.composition_id} (frame {frame})")
        driver = await self.open_driver(job, "still")
        try:
            await driver.commit_frame(frame)
            token = await driver.await_readiness(self.readiness_timeout_ms)
            await driver.capture(token, image_format=image_format, quality=quality, path=output_path)
        finally:
            await driver.dispose()
        return output_path

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    async def _capture(
        self,
        job: RenderJobSpec,
        workers: int,
        sink_factory: SinkFactory,
        progress: ProgressAggregator,
        collect_audio: bool,
    ) -> Tuple[List[Segment], List[AudioTrackDescriptor]]:
        ranges = partition_frames(job.start_frame, job.end_frame, workers)
        tasks = [
            asyncio.create_task(
                self._run_worker(job, index, first, last, sink_factory, progress, collect_audio),
                name=f"worker_{index}",
            )
            for index, first, last in ranges
        ]

        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            await self._cancel_all(tasks)
            raise

        failed = [t for t in tasks if t.done() and not t.cancelled() and t.exception() is not None]
        if failed:
            await self._cancel_all(tasks)
            error = failed[0].exception()
            logger.error(f"[orchestrator] {len(failed)} worker(s) failed, job aborted: {error}")
            raise error

        segments = []
        tracks: List[AudioTrackDescriptor] = []
        for task in tasks:
            segment, worker_tracks = task.result()
            segments.append(segment)
            tracks.extend(worker_tracks)
        return segments, tracks

    async def _run_worker(
        self,
        job: RenderJobSpec,
        index: int,
        first: int,
        last: int,
        sink_factory: SinkFactory,
        progress: ProgressAggregator,
        collect_audio: bool,
    ) -> Tuple[Segment, List[AudioTrackDescriptor]]:
        driver = await self.open_driver(job, f"worker_{index}")
        try:
            segment = await render_range(
                driver,
                sink_factory(index, first, last),
                first,
                last,
                on_progress=progress.update,
                worker_index=index,
                readiness_timeout_ms=self.readiness_timeout_ms,
            )
            # Every page shows the same scene; one collection is enough
            tracks = await driver.collect_audio_tracks() if collect_audio and index == 0 else []
            return segment, tracks
        finally:
            await driver.dispose()

    @staticmethod
    async def _cancel_all(tasks: List[asyncio.Task]) -> None:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _join(
        self,
        segments: List[Segment],
        target: Path,
        reporter: Optional[ProgressReporter],
    ) -> str:
        """Concatenate segments in worker order with the concat demuxer (stream copy)."""
        ordered = sorted(segments, key=lambda s: s.worker_index)
        if len(ordered) == 1:
            return ordered[0].file_path

        if reporter is not None:
            reporter.status(f"Concatenating {len(ordered)} segments")
        concat_file = target.parent / "concat_list.txt"
        logger.info(f"[concat] Creating concat list with {len(ordered)} segments")
        with open(concat_file, "w", encoding="utf-8") as f:
            for segment in ordered:
                abs_path = os.path.abspath(segment.file_path).replace("\\", "/")
                f.write(f"file '{abs_path}'\n")
                logger.debug(
                    f"[concat] Segment {segment.worker_index}: frames "
                    f"{segment.start_frame}-{segment.end_frame} "
                    f"({file_summary(segment.file_path)['size_mb']} MB)"
                )

        concat_start = time.time()
        await self.ffmpeg.run(
            ["-f", "concat", "-safe", "0", "-i", str(concat_file), "-c", "copy", str(target)],
            stage="concat",
        )
        logger.info(f"[concat] Concat completed in {time.time() - concat_start:.2f}s")

        for segment in ordered:
            Path(segment.file_path).unlink(missing_ok=True)
        return str(target)

    async def _encode_gif(
        self,
        job: RenderJobSpec,
        frames_path: str,
        work_dir: Path,
        output_path: Path,
        reporter: Optional[ProgressReporter],
    ) -> None:
        """Two passes: build a 256-colour palette, then map every frame onto it."""
        if reporter is not None:
            reporter.status("Generating GIF with palette optimization")
        generate, apply = palette_filters(job.fps, job.scaled_width, job.scaled_height)
        palette_path = work_dir / "palette.png"

        await self.ffmpeg.run(
            ["-i", frames_path, "-vf", generate, str(palette_path)],
            stage="palettegen",
        )
        await self.ffmpeg.run(
            [
                "-i", frames_path,
                "-i", str(palette_path),
                "-lavfi", apply,
                "-loop", str(GIF_LOOP),
                str(output_path),
            ],
            stage="paletteuse",
        )

    async def _finish_video(
        self,
        job: RenderJobSpec,
        video_path: str,
        output_path: Path,
        tracks: List[AudioTrackDescriptor],
        workers: int,
        work_dir: Path,
        reporter: Optional[ProgressReporter],
    ) -> bool:
        """Mix audio into the final output when allowed; otherwise move the video into place."""
        if should_mix(job, workers, tracks):
            if reporter is not None:
                reporter.status(f"Mixing {len(tracks)} audio track(s)")
            try:
                await self.audio_mixer.mix(
                    video_path,
                    tracks,
                    str(output_path),
                    job.fps,
                    total_frames=job.total_frames,
                    first_frame=job.start_frame,
                    work_dir=str(work_dir),
                    audio_codec=job.profile.audio_codec,
                )
                return True
            except AudioMixFailure as exc:
                logger.warning(f"[audio] {exc}. Keeping video without audio.")
                if reporter is not None:
                    reporter.warning(f"Audio mixing failed, output has no audio: {exc}")
        elif workers > 1 and tracks:
            message = (
                f"{len(tracks)} audio track(s) not mixed: audio is only mixed for "
                f"single-worker renders (concurrency 1, this job used {workers})"
            )
            logger.warning(f"[audio] {message}")
            if reporter is not None:
                reporter.warning(message)

        shutil.move(video_path, str(output_path))
        return False


async def stream_render(
    job: RenderJobSpec,
    reporter: ProgressReporter,
    orchestrator: RenderOrchestrator,
    download_url: Optional[Callable[[str], Optional[str]]] = None,
) -> Optional[RenderResult]:
    """
    Job boundary: render `job` and report it as one complete event stream.

    Never raises for render failures; they become the terminal error event.
    """
    reporter.start(job.composition_id, job.codec, job.total_frames, orchestrator.worker_count(job))
    started = time.time()
    try:
        result = await orchestrator.render(job, reporter)
    except RenderError as exc:
        logger.error(f"❌ Render failed: {exc}")
        reporter.error(exc)
        return None
    except Exception as exc:
        logger.exception(f"❌ Render failed unexpectedly: {exc}")
        reporter.error(exc)
        return None

    reporter.complete(
        output_path=result.output_path,
        filename=os.path.basename(result.output_path),
        duration_ms=int((time.time() - started) * 1000),
        download_url=download_url(result.output_path) if download_url else None,
    )
    return result
