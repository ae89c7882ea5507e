"""Tests for frame partitioning and the end-to-end render flow with fakes."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from framecast.errors import AudioMixFailure, RenderValidationError
from framecast.models import AudioTrackDescriptor
from framecast.renderer.orchestrator import (
    ProgressAggregator,
    RenderOrchestrator,
    partition_frames,
    stream_render,
)
from framecast.reporter import ProgressReporter, collecting_sink


def run_stream(orchestrator, job):
    sink, events = collecting_sink()
    result = asyncio.run(stream_render(job, ProgressReporter(sink), orchestrator))
    return result, events


def make_orchestrator(driver_factory, ffmpeg, audio_mixer=None, max_workers=8):
    return RenderOrchestrator(
        driver_factory=driver_factory,
        ffmpeg=ffmpeg,
        audio_mixer=audio_mixer or Mock(),
        frontend_url="http://localhost:3000",
        max_workers=max_workers,
    )


@pytest.mark.parametrize(
    "start,end,k",
    [(0, 59, 1), (0, 59, 3), (0, 9, 4), (5, 104, 7), (0, 2, 8), (10, 10, 3)],
)
def test_partition_covers_range_exactly(start, end, k):
    ranges = partition_frames(start, end, k)
    total = end - start + 1

    assert len(ranges) == min(k, total)
    assert [index for index, _, _ in ranges] == list(range(len(ranges)))
    assert ranges[0][1] == start
    assert ranges[-1][2] == end
    for (_, _, prev_end), (_, next_start, _) in zip(ranges, ranges[1:]):
        assert next_start == prev_end + 1
    sizes = [last - first + 1 for _, first, last in ranges]
    assert sum(sizes) == total
    assert all(size == total // len(ranges) for size in sizes[:-1])


def test_partition_last_range_takes_remainder():
    assert partition_frames(0, 9, 4) == [(0, 0, 1), (1, 2, 3), (2, 4, 5), (3, 6, 9)]
    assert partition_frames(0, 59, 3) == [(0, 0, 19), (1, 20, 39), (2, 40, 59)]


def test_partition_rejects_bad_input():
    with pytest.raises(RenderValidationError):
        partition_frames(5, 4, 2)
    with pytest.raises(RenderValidationError):
        partition_frames(0, 10, 0)


def test_progress_aggregator_is_monotonic():
    updates = []
    progress = ProgressAggregator(30, 3, on_update=lambda done, total: updates.append(done))

    progress.update(1, 4)
    progress.update(0, 2)
    progress.update(1, 3)
    progress.update(2, 10)

    assert updates == [4, 6, 6, 16]
    assert progress.completed == 16


def test_single_worker_render(make_driver_factory, fake_ffmpeg, make_job, tmp_path):
    """intro 0-59 with one worker: 60 frames, final progress 60/60."""
    factory = make_driver_factory()
    orchestrator = make_orchestrator(factory, fake_ffmpeg)
    job = make_job(muted=True)

    result, events = run_stream(orchestrator, job)

    types = [event.type for event in events]
    assert types[0] == "start"
    assert types[-1] == "complete"
    assert events[0].frames == 60
    progress = [event for event in events if event.type == "progress"]
    assert [event.frame for event in progress] == list(range(1, 61))
    last = progress[-1]
    assert (last.frame, last.total, last.percent) == (60, 60, 100)

    assert result.total_frames == 60
    assert result.worker_count == 1
    assert (tmp_path / "intro.mp4").exists()
    assert fake_ffmpeg.sessions[0].frames == list(range(60))
    assert "concat" not in fake_ffmpeg.stages
    assert all(driver.disposed for driver in factory.drivers)
    assert "composition=intro" in factory.drivers[0].loaded_url
    assert not list(tmp_path.glob(".framecast-*"))


def test_three_workers_concatenate_in_order(make_driver_factory, fake_ffmpeg, make_job, tmp_path):
    factory = make_driver_factory()
    orchestrator = make_orchestrator(factory, fake_ffmpeg)
    job = make_job(concurrency=3, muted=True)

    result, events = run_stream(orchestrator, job)

    assert events[-1].type == "complete"
    assert len(factory.drivers) == 3
    frames = sorted((session.frames for session in fake_ffmpeg.sessions), key=lambda f: f[0])
    assert frames == [list(range(0, 20)), list(range(20, 40)), list(range(40, 60))]

    assert fake_ffmpeg.stages == ["concat"]
    _, args = fake_ffmpeg.runs[0]
    assert args[:4] == ["-f", "concat", "-safe", "0"]
    assert args[-3:-1] == ["-c", "copy"]
    listed = fake_ffmpeg.concat_lists[0].splitlines()
    assert [line.rsplit("/", 1)[1] for line in listed] == ["segment-0.mp4'", "segment-1.mp4'", "segment-2.mp4'"]

    assert [segment.worker_index for segment in result.segments] == [0, 1, 2]
    progress = [event.frame for event in events if event.type == "progress"]
    assert progress == sorted(set(progress))
    assert progress[-1] == 60


def test_worker_count_is_capped(make_driver_factory, fake_ffmpeg, make_job):
    orchestrator = make_orchestrator(make_driver_factory(), fake_ffmpeg, max_workers=2)
    assert orchestrator.worker_count(make_job(concurrency=6)) == 2
    assert orchestrator.worker_count(make_job(concurrency=6, start_frame=0, end_frame=0)) == 1


@pytest.mark.parametrize("options", [{"codec": "gif"}, {"image_sequence": True}])
def test_gif_and_sequence_render_from_one_page(make_driver_factory, fake_ffmpeg, make_job, tmp_path, options):
    """Requested concurrency is ignored for GIF and image sequence output."""
    factory = make_driver_factory()
    orchestrator = make_orchestrator(factory, fake_ffmpeg)
    job = make_job(concurrency=3, end_frame=29, output_path=str(tmp_path / "out"), **options)

    result, events = run_stream(orchestrator, job)

    assert orchestrator.worker_count(job) == 1
    assert events[0].concurrency == 1
    assert events[-1].type == "complete"
    assert len(factory.drivers) == 1
    assert factory.drivers[0].committed == list(range(30))
    assert result.worker_count == 1
    assert "concat" not in fake_ffmpeg.stages


def test_gif_runs_two_palette_passes(make_driver_factory, fake_ffmpeg, make_job, tmp_path):
    """A one-frame GIF is one intermediate plus exactly two ffmpeg passes."""
    orchestrator = make_orchestrator(make_driver_factory(), fake_ffmpeg)
    job = make_job(codec="gif", start_frame=0, end_frame=0, output_path=str(tmp_path / "intro.gif"))

    result, events = run_stream(orchestrator, job)

    assert events[-1].type == "complete"
    assert fake_ffmpeg.stages == ["palettegen", "paletteuse"]
    assert fake_ffmpeg.sessions[0].stage == "intermediate"
    assert fake_ffmpeg.sessions[0].frames == [0]
    _, apply_args = fake_ffmpeg.runs[1]
    assert apply_args[apply_args.index("-loop") + 1] == "0"
    assert (tmp_path / "intro.gif").exists()
    assert result.audio_mixed is False


def test_image_sequence_writes_stills(make_driver_factory, fake_ffmpeg, make_job, tmp_path):
    orchestrator = make_orchestrator(make_driver_factory(), fake_ffmpeg)
    out_dir = tmp_path / "frames"
    job = make_job(end_frame=11, image_sequence=True, output_path=str(out_dir))

    result, events = run_stream(orchestrator, job)

    assert events[-1].type == "complete"
    names = sorted(p.name for p in out_dir.iterdir())
    assert names == [f"frame-{i:02d}.png" for i in range(12)]
    assert (out_dir / "frame-07.png").read_bytes() == b"frame-7"
    assert fake_ffmpeg.runs == []


def test_audio_is_mixed_for_single_worker(make_driver_factory, fake_ffmpeg, make_job, tmp_path):
    track = AudioTrackDescriptor(src="music.mp3", volume=0.8)
    mixer = Mock()
    mixer.mix = AsyncMock()
    orchestrator = make_orchestrator(make_driver_factory(tracks=[track]), fake_ffmpeg, mixer)

    result, events = run_stream(orchestrator, make_job())

    assert result.audio_mixed is True
    assert result.audio_tracks == [track]
    mixer.mix.assert_awaited_once()
    call = mixer.mix.await_args
    assert call.args[1] == [track]
    assert call.args[2] == str(tmp_path / "intro.mp4")
    assert call.args[3] == 30
    assert call.kwargs["total_frames"] == 60
    assert call.kwargs["audio_codec"] == "aac"


def test_webm_audio_is_mixed_as_opus(make_driver_factory, fake_ffmpeg, make_job, tmp_path):
    track = AudioTrackDescriptor(src="music.mp3")
    mixer = Mock()
    mixer.mix = AsyncMock()
    orchestrator = make_orchestrator(make_driver_factory(tracks=[track]), fake_ffmpeg, mixer)

    run_stream(orchestrator, make_job(codec="vp9", output_path=str(tmp_path / "intro.webm")))

    assert mixer.mix.await_args.kwargs["audio_codec"] == "libopus"


def test_audio_failure_is_not_fatal(make_driver_factory, fake_ffmpeg, make_job, tmp_path):
    """A failed mix leaves a silent but complete video and a warning."""
    track = AudioTrackDescriptor(src="https://cdn.example.com/missing.mp3")
    mixer = Mock()
    mixer.mix = AsyncMock(side_effect=AudioMixFailure("download failed: 404"))
    orchestrator = make_orchestrator(make_driver_factory(tracks=[track]), fake_ffmpeg, mixer)

    result, events = run_stream(orchestrator, make_job())

    assert events[-1].type == "complete"
    warnings = [e for e in events if e.type == "status" and e.level == "warning"]
    assert len(warnings) == 1
    assert "404" in warnings[0].message
    assert result.audio_mixed is False
    assert (tmp_path / "intro.mp4").read_bytes() == b"video"


def test_parallel_render_skips_audio_with_warning(make_driver_factory, fake_ffmpeg, make_job):
    track = AudioTrackDescriptor(src="music.mp3")
    mixer = Mock()
    mixer.mix = AsyncMock()
    orchestrator = make_orchestrator(make_driver_factory(tracks=[track]), fake_ffmpeg, mixer)

    result, events = run_stream(orchestrator, make_job(concurrency=3))

    mixer.mix.assert_not_awaited()
    assert result.audio_mixed is False
    assert result.audio_tracks == []
    warnings = [e.message for e in events if e.type == "status" and e.level == "warning"]
    assert len(warnings) == 1
    assert warnings[0].startswith("1 audio track(s) not mixed")
    assert events[-1].type == "complete"


def test_worker_failure_fails_job(make_driver_factory, fake_ffmpeg, make_job, tmp_path):
    """One failing worker cancels the others and no output is produced."""
    factory = make_driver_factory(fail_at=25)
    orchestrator = make_orchestrator(factory, fake_ffmpeg)

    result, events = run_stream(orchestrator, make_job(concurrency=3, muted=True))

    assert result is None
    assert events[-1].type == "error"
    assert events[-1].error_type == "WorkerFailure"
    assert "frame 25" in events[-1].message
    assert not any(e.type == "complete" for e in events)
    assert all(driver.disposed for driver in factory.drivers)
    assert any(session.aborted for session in fake_ffmpeg.sessions)
    assert "concat" not in fake_ffmpeg.stages
    assert not (tmp_path / "intro.mp4").exists()
    assert not list(tmp_path.glob(".framecast-*"))


def test_render_still(make_driver_factory, fake_ffmpeg, make_job, tmp_path):
    factory = make_driver_factory()
    orchestrator = make_orchestrator(factory, fake_ffmpeg)
    path = str(tmp_path / "stills" / "thumb.png")

    returned = asyncio.run(orchestrator.render_still(make_job(), 42, path))

    assert returned == path
    assert (tmp_path / "stills" / "thumb.png").read_bytes() == b"frame-42"
    assert factory.drivers[0].disposed is True


def test_probe_composition_reads_metadata(make_driver_factory, fake_ffmpeg):
    factory = make_driver_factory()
    orchestrator = make_orchestrator(factory, fake_ffmpeg)

    ready = asyncio.run(orchestrator.probe_composition("intro"))

    assert ready.duration_in_frames == 60
    assert factory.drivers[0].disposed is True


def test_remote_frontend_is_rejected(make_driver_factory, fake_ffmpeg):
    with pytest.raises(RenderValidationError):
        RenderOrchestrator(
            driver_factory=make_driver_factory(),
            ffmpeg=fake_ffmpeg,
            audio_mixer=Mock(),
            frontend_url="https://scenes.example.com",
        )
