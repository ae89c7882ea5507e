"""Tests for the batch scheduler and the batch runner."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from framecast.batch import render_batch, run_all
from framecast.errors import BatchJobFailure, RenderError, RenderValidationError
from framecast.renderer.frame_driver import ReadyState


def make_job(name, delay=0.0, fail=False, log=None):
    async def job():
        if log is not None:
            log.append(("start", name))
        await asyncio.sleep(delay)
        if fail:
            raise RenderError(f"{name} exploded")
        if log is not None:
            log.append(("end", name))
        return name

    return job


def test_results_keep_original_indices():
    """Five jobs, j1 fails: every result sits at its own index."""
    jobs = [
        make_job("j0", delay=0.03),
        make_job("j1", delay=0.01, fail=True),
        make_job("j2", delay=0.02),
        make_job("j3"),
        make_job("j4", delay=0.01),
    ]

    results = asyncio.run(run_all(jobs, 2))

    assert [r.index for r in results] == [0, 1, 2, 3, 4]
    assert [r.status for r in results] == ["fulfilled", "rejected", "fulfilled", "fulfilled", "fulfilled"]
    assert [r.value for r in results if r.ok] == ["j0", "j2", "j3", "j4"]
    assert "j1 exploded" in str(results[1].error)


def test_concurrency_limit_is_respected():
    in_flight = 0
    peak = 0

    def tracked(delay):
        async def job():
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(delay)
            in_flight -= 1

        return job

    asyncio.run(run_all([tracked(0.01 * (i % 3)) for i in range(9)], 3))

    assert peak == 3


def test_limit_larger_than_job_count():
    results = asyncio.run(run_all([make_job("only")], 10))
    assert [r.value for r in results] == ["only"]


def test_invalid_limit():
    with pytest.raises(ValueError):
        asyncio.run(run_all([make_job("j0")], 0))


def test_fail_fast_stops_claiming_new_jobs():
    log = []
    jobs = [make_job("j0", fail=True, log=log)] + [make_job(f"j{i}", log=log) for i in range(1, 5)]

    with pytest.raises(BatchJobFailure) as excinfo:
        asyncio.run(run_all(jobs, 1, fail_fast=True))

    assert excinfo.value.index == 0
    assert [r.index for r in excinfo.value.results] == [0]
    assert log == [("start", "j0")]


def test_fail_fast_lets_running_jobs_finish():
    log = []
    jobs = [
        make_job("j0", delay=0.05, log=log),
        make_job("j1", fail=True, log=log),
        make_job("j2", log=log),
        make_job("j3", log=log),
    ]

    with pytest.raises(BatchJobFailure) as excinfo:
        asyncio.run(run_all(jobs, 2, fail_fast=True))

    assert excinfo.value.index == 1
    assert ("end", "j0") in log
    assert ("start", "j2") not in log
    assert sorted(r.index for r in excinfo.value.results) == [0, 1]


def test_on_job_done_sees_every_job():
    done = []
    asyncio.run(run_all([make_job("a"), make_job("b", fail=True)], 2, on_job_done=lambda i, r: done.append((i, r.ok))))
    assert sorted(done) == [(0, True), (1, False)]


def make_orchestrator(fail_rows=()):
    orchestrator = Mock()

    async def render(job, reporter=None):
        if job.input_props.get("name") in fail_rows:
            raise RenderError(f"render of {job.input_props['name']} failed")
        return job.output_path

    orchestrator.render = AsyncMock(side_effect=render)
    orchestrator.probe_composition = AsyncMock(
        return_value=ReadyState(width=1280, height=720, fps=25, duration_in_frames=50)
    )
    return orchestrator


ROWS = [{"name": "Ada"}, {"name": "Grace"}, {"name": "Alan"}]


def test_render_batch_one_file_per_row(tmp_path):
    orchestrator = make_orchestrator(fail_rows=("Grace",))

    summary = asyncio.run(
        render_batch(
            "welcome",
            ROWS,
            {"codec": "h264", "input_props": {"theme": "dark"}},
            str(tmp_path),
            output_pattern="{name}-welcome.mp4",
            concurrency=2,
            orchestrator=orchestrator,
        )
    )

    assert summary.filenames == ["Ada-welcome.mp4", "Grace-welcome.mp4", "Alan-welcome.mp4"]
    assert (summary.succeeded, summary.failed) == (2, 1)
    assert summary.results[1].ok is False

    jobs = [c.args[0] for c in orchestrator.render.await_args_list]
    first = next(job for job in jobs if job.input_props["name"] == "Ada")
    assert first.input_props == {"theme": "dark", "name": "Ada"}
    assert (first.width, first.height, first.fps, first.end_frame) == (1280, 720, 25, 49)
    assert first.output_path == str(tmp_path / "Ada-welcome.mp4")
    orchestrator.probe_composition.assert_awaited_once()


def test_render_batch_default_pattern_skips_probe(tmp_path):
    orchestrator = make_orchestrator()
    options = {"codec": "vp9", "width": 640, "height": 360, "fps": 30, "end_frame": 29}

    summary = asyncio.run(render_batch("intro", ROWS, options, str(tmp_path), orchestrator=orchestrator))

    assert summary.filenames == ["intro-000.webm", "intro-001.webm", "intro-002.webm"]
    orchestrator.probe_composition.assert_not_awaited()


@pytest.mark.parametrize(
    "options",
    [
        {"crf": 99},
        {"start_frame": -5},
        {"codec": "prores", "crf": 20},
        {"start_frame": 40, "end_frame": 10},
    ],
)
def test_bad_options_fail_before_composition_lookup(tmp_path, options):
    orchestrator = make_orchestrator()

    with pytest.raises(RenderValidationError):
        asyncio.run(render_batch("intro", ROWS, options, str(tmp_path), orchestrator=orchestrator))

    orchestrator.probe_composition.assert_not_awaited()
    orchestrator.render.assert_not_awaited()


def test_default_pattern_sanitizes_composition_id(tmp_path):
    orchestrator = make_orchestrator()
    options = {"width": 640, "height": 360, "fps": 30, "end_frame": 29}

    summary = asyncio.run(render_batch("promo/intro", ROWS[:1], options, str(tmp_path), orchestrator=orchestrator))

    assert summary.filenames == ["promo-intro-000.mp4"]
    job = orchestrator.render.await_args.args[0]
    assert job.output_path == str(tmp_path / "promo-intro-000.mp4")


def test_duplicate_filenames_fail_before_rendering(tmp_path):
    orchestrator = make_orchestrator()
    rows = [{"team": "red"}, {"team": "red"}]

    with pytest.raises(RenderValidationError):
        asyncio.run(render_batch("intro", rows, {"end_frame": 9}, str(tmp_path), "{team}.mp4", orchestrator=orchestrator))

    orchestrator.render.assert_not_awaited()


def test_render_batch_fail_fast(tmp_path):
    orchestrator = make_orchestrator(fail_rows=("Ada",))
    options = {"width": 640, "height": 360, "fps": 30, "end_frame": 29}

    with pytest.raises(BatchJobFailure) as excinfo:
        asyncio.run(
            render_batch("intro", ROWS, options, str(tmp_path), concurrency=1, fail_fast=True, orchestrator=orchestrator)
        )

    assert excinfo.value.index == 0
    assert orchestrator.render.await_count == 1
