"""
Render worker: renders one contiguous frame range into one sink.
"""
from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from config import READINESS_TIMEOUT_MS
from framecast.errors import RenderError, WorkerFailure
from framecast.models import Segment
from utils.logger import setup_logger

logger = setup_logger(__name__)

ProgressCallback = Callable[[int, int], None]


async def render_range(
    driver,
    sink,
    start_frame: int,
    end_frame: int,
    on_progress: Optional[ProgressCallback] = None,
    worker_index: int = 0,
    readiness_timeout_ms: int = READINESS_TIMEOUT_MS,
) -> Segment:
    """
    Render frames start_frame..end_frame (inclusive) in ascending order.

    Every frame goes through commit -> await readiness -> capture -> sink.
    on_progress(worker_index, frames_done) is called after each frame has
    been handed to the sink.

    On any failure the sink is aborted and the error propagates. Errors from
    the render taxonomy pass through unchanged; anything else is wrapped in
    WorkerFailure naming the worker and frame.
    """
    tag = f"worker_{worker_index}"
    total = end_frame - start_frame + 1
    logger.info(f"[{tag}] Rendering frames {start_frame}-{end_frame} ({total} frames)")

    started = time.time()
    frame = start_frame
    try:
        await sink.start()
        for frame in range(start_frame, end_frame + 1):
            await driver.commit_frame(frame)
            token = await driver.await_readiness(readiness_timeout_ms)
            data = await driver.capture(token, image_format=sink.image_format, quality=sink.quality)
            await sink.write_frame(frame, data)
            if on_progress is not None:
                on_progress(worker_index, frame - start_frame + 1)
        file_path = await sink.close()
    except asyncio.CancelledError:
        logger.info(f"[{tag}] Cancelled at frame {frame}")
        await sink.abort()
        raise
    except RenderError as exc:
        logger.error(f"[{tag}] Failed at frame {frame}: {exc}")
        await sink.abort()
        raise
    except Exception as exc:
        logger.error(f"[{tag}] Failed at frame {frame}: {exc}")
        await sink.abort()
        raise WorkerFailure(
            f"worker {worker_index} failed at frame {frame}: {exc}",
            worker_index=worker_index,
            frame=frame,
        ) from exc

    elapsed = time.time() - started
    fps = total / elapsed if elapsed > 0 else 0.0
    logger.info(f"[{tag}] Done: {total} frames in {elapsed:.2f}s ({fps:.1f} fps)")
    return Segment(
        worker_index=worker_index,
        start_frame=start_frame,
        end_frame=end_frame,
        file_path=str(file_path),
    )
