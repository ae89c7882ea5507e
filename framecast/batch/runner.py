"""
Batch render: one composition, one output file per data row.
"""
from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from config import DEFAULT_BATCH_CONCURRENCY, DEFAULT_CODEC, DEFAULT_FPS, DEFAULT_HEIGHT, DEFAULT_WIDTH
from framecast.batch.output_pattern import resolve_output_filenames
from framecast.batch.scheduler import BatchResult, run_all
from framecast.codecs import get_codec_profile
from framecast.models import RenderJobSpec
from framecast.renderer.orchestrator import RenderOrchestrator
from utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class BatchSummary:
    filenames: List[str]
    results: List[BatchResult] = field(default_factory=list)
    duration_s: float = 0.0

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)


def _check_options(composition_id: str, options: Dict[str, Any], output_path: str) -> None:
    """Validate the options with stand-ins for the values the composition provides."""
    stand_ins = {
        "width": DEFAULT_WIDTH,
        "height": DEFAULT_HEIGHT,
        "fps": DEFAULT_FPS,
        "end_frame": options.get("start_frame") or 0,
    }
    given = {k: v for k, v in options.items() if v is not None and k != "input_props"}
    RenderJobSpec.from_options(**{**stand_ins, **given}, composition_id=composition_id, output_path=output_path)


async def build_batch_jobs(
    composition_id: str,
    rows: Sequence[Dict[str, Any]],
    base_options: Dict[str, Any],
    output_dir: str,
    output_pattern: Optional[str],
    orchestrator: RenderOrchestrator,
) -> List[RenderJobSpec]:
    """
    Validate every job of the batch before anything renders.

    Row fields are merged over base_options["input_props"]. Missing size,
    fps and duration are read once from the composition itself.
    """
    options = dict(base_options)
    codec = options.get("codec", DEFAULT_CODEC)
    ext = get_codec_profile(codec).container_extension
    pattern = output_pattern or f"{{compositionId}}-{{_index}}.{ext}"
    filenames = resolve_output_filenames(pattern, rows, composition_id, ext)

    if any(options.get(k) is None for k in ("end_frame", "width", "height", "fps")):
        # Reject bad options before the lookup starts a browser
        _check_options(composition_id, options, os.path.join(output_dir, filenames[0] if filenames else pattern))
        logger.info(f"[batch] Fetching composition metadata for {composition_id}")
        meta = await orchestrator.probe_composition(composition_id)
        for key, value in (("width", meta.width), ("height", meta.height), ("fps", meta.fps)):
            if options.get(key) is None and value is not None:
                options[key] = value
        if options.get("end_frame") is None and meta.duration_in_frames:
            options["end_frame"] = meta.duration_in_frames - 1
        logger.info(
            f"[batch] {options.get('width')}x{options.get('height')} @ {options.get('fps')}fps, "
            f"end frame {options.get('end_frame')}"
        )

    options = {k: v for k, v in options.items() if v is not None}
    base_props = options.pop("input_props", {}) or {}
    jobs = []
    for row, filename in zip(rows, filenames):
        jobs.append(
            RenderJobSpec.from_options(
                **options,
                composition_id=composition_id,
                input_props={**base_props, **row},
                output_path=os.path.join(output_dir, filename),
            )
        )
    return jobs


async def render_batch(
    composition_id: str,
    rows: Sequence[Dict[str, Any]],
    base_options: Dict[str, Any],
    output_dir: str,
    output_pattern: Optional[str] = None,
    concurrency: int = DEFAULT_BATCH_CONCURRENCY,
    fail_fast: bool = False,
    orchestrator: Optional[RenderOrchestrator] = None,
    on_job_done: Optional[Callable[[int, BatchResult], None]] = None,
) -> BatchSummary:
    """
    Render one video per row with at most `concurrency` jobs in flight.

    Raises:
        RenderValidationError: bad options or duplicate filenames, before any render
        BatchJobFailure: a job failed and fail_fast was requested
    """
    orchestrator = orchestrator or RenderOrchestrator()
    os.makedirs(output_dir, exist_ok=True)

    jobs = await build_batch_jobs(composition_id, rows, base_options, output_dir, output_pattern, orchestrator)
    filenames = [os.path.basename(job.output_path) for job in jobs]
    logger.info(f"📦 Batch render: {composition_id}, {len(jobs)} job(s), concurrency {concurrency}")

    finished = 0

    def report(index: int, result: BatchResult) -> None:
        nonlocal finished
        finished += 1
        label = f"[{finished}/{len(jobs)}]"
        if result.ok:
            logger.info(f"[batch] ✓ {label} {filenames[index]}")
        else:
            logger.error(f"[batch] ✗ {label} {filenames[index]}: {result.error}")
        if on_job_done is not None:
            on_job_done(index, result)

    started = time.time()
    results = await run_all(
        [lambda job=job: orchestrator.render(job) for job in jobs],
        concurrency,
        fail_fast=fail_fast,
        on_job_done=report,
    )
    summary = BatchSummary(filenames=filenames, results=results, duration_s=time.time() - started)
    logger.info(
        f"[batch] Done in {summary.duration_s:.1f}s: {summary.succeeded} succeeded, {summary.failed} failed"
    )
    return summary
