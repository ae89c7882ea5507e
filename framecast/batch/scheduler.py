"""
Batch scheduler: runs independent jobs under a job-level concurrency cap.

A fixed number of lanes each claim the next unstarted job until none are
left. Results are stored at the job's original index, whatever order the
jobs finish in. This cap is separate from the frame workers a single job
may start, so peak renderer instances = lanes x workers per job.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Literal, Optional, Sequence

from framecast.errors import BatchJobFailure
from utils.logger import setup_logger

logger = setup_logger(__name__)

Job = Callable[[], Awaitable[Any]]


@dataclass
class BatchResult:
    index: int
    status: Literal["fulfilled", "rejected"]
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == "fulfilled"


async def run_all(
    jobs: Sequence[Job],
    concurrency_limit: int,
    fail_fast: bool = False,
    on_job_done: Optional[Callable[[int, BatchResult], None]] = None,
) -> List[BatchResult]:
    """
    Run `jobs` with at most `concurrency_limit` in flight.

    A failing job never affects the others unless fail_fast is set. With
    fail_fast, lanes stop claiming new jobs after the first failure, jobs
    already running are allowed to finish, then BatchJobFailure is raised
    for the first job that failed.
    """
    if concurrency_limit < 1:
        raise ValueError(f"concurrency_limit must be >= 1, got {concurrency_limit}")

    results: List[Optional[BatchResult]] = [None] * len(jobs)
    next_index = 0
    first_failure: Optional[BatchResult] = None

    async def lane(lane_id: int) -> None:
        nonlocal next_index, first_failure
        while next_index < len(jobs):
            if fail_fast and first_failure is not None:
                return
            index = next_index
            next_index += 1
            logger.debug(f"[batch] lane {lane_id} claimed job {index}")
            try:
                value = await jobs[index]()
                result = BatchResult(index=index, status="fulfilled", value=value)
            except Exception as exc:
                logger.error(f"[batch] job {index} failed: {exc}")
                result = BatchResult(index=index, status="rejected", error=exc)
                if first_failure is None:
                    first_failure = result
            results[index] = result
            if on_job_done is not None:
                on_job_done(index, result)

    lanes = min(concurrency_limit, len(jobs))
    await asyncio.gather(*(lane(i) for i in range(lanes)))

    settled = [r for r in results if r is not None]
    if fail_fast and first_failure is not None:
        raise BatchJobFailure(
            f"batch job {first_failure.index} failed: {first_failure.error}",
            index=first_failure.index,
            results=settled,
        ) from first_failure.error
    return settled
