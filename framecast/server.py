"""
Render server (aiohttp).

    POST /api/render   stream a render as NDJSON events (application/x-ndjson)
    POST /api/still    capture one frame, JSON response
    GET  /api/codecs   available codecs
    GET  /health       liveness
    GET  /outputs/...  rendered files

Malformed render requests are answered with HTTP 400 before any event is
streamed. Once streaming has started every failure arrives as the terminal
`error` event.
"""
from __future__ import annotations

import asyncio
import json
import os
import time
from typing import Optional

from aiohttp import web

from config import OUTPUT_DIR, SERVER_HOST, SERVER_PORT
from framecast.codecs import get_codec_profile, list_codecs
from framecast.errors import RenderError, RenderValidationError
from framecast.models import RenderJobSpec, RenderRequest
from framecast.renderer.orchestrator import RenderOrchestrator, stream_render
from framecast.reporter import ProgressReporter, queue_sink
from utils.helpers import default_output_path, ensure_directory
from utils.logger import setup_logger

logger = setup_logger(__name__)

ORCHESTRATOR_KEY = web.AppKey("orchestrator", RenderOrchestrator)
OUTPUT_DIR_KEY = web.AppKey("output_dir", str)

NDJSON_CONTENT_TYPE = "application/x-ndjson"


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def _read_json(request: web.Request) -> dict:
    try:
        payload = await request.json()
    except json.JSONDecodeError as exc:
        raise RenderValidationError(f"request body is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise RenderValidationError("request body must be a JSON object")
    return payload


def _download_url(request: web.Request, output_path: str) -> Optional[str]:
    output_dir = request.app[OUTPUT_DIR_KEY]
    relative = os.path.relpath(output_path, output_dir)
    if relative.startswith(".."):
        return None
    return f"{request.url.origin()}/outputs/{relative.replace(os.sep, '/')}"


async def handle_render(request: web.Request) -> web.StreamResponse:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    output_dir = request.app[OUTPUT_DIR_KEY]

    try:
        payload = await _read_json(request)
        render_request = RenderRequest.parse(payload)
        ext = "" if render_request.image_sequence else get_codec_profile(render_request.codec).container_extension
        job = render_request.to_job_spec(default_output_path(render_request.composition_id, ext, output_dir))
    except RenderValidationError as exc:
        logger.warning(f"[server] Rejected render request: {exc}")
        return _error(str(exc), 400)

    logger.info(
        f"🎬 Render request: {job.composition_id} {job.width}x{job.height} @ {job.fps}fps, "
        f"{job.total_frames} frames, codec={job.codec}"
    )

    response = web.StreamResponse(headers={"Content-Type": NDJSON_CONTENT_TYPE, "Cache-Control": "no-cache"})
    await response.prepare(request)

    queue: asyncio.Queue = asyncio.Queue()
    reporter = ProgressReporter(queue_sink(queue))
    task = asyncio.create_task(
        stream_render(job, reporter, orchestrator, download_url=lambda path: _download_url(request, path))
    )
    task.add_done_callback(lambda _: queue.put_nowait(None))

    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            await response.write((event.to_line() + "\n").encode("utf-8"))
    except (ConnectionResetError, asyncio.CancelledError):
        logger.warning(f"[server] Client went away, cancelling render of {job.composition_id}")
        task.cancel()
        raise

    await response.write_eof()
    return response


async def handle_still(request: web.Request) -> web.Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    output_dir = request.app[OUTPUT_DIR_KEY]

    try:
        payload = await _read_json(request)
        composition_id = payload.get("compositionId")
        if not composition_id:
            raise RenderValidationError("compositionId is required")
        frame = int(payload.get("frame", 0))
        if frame < 0:
            raise RenderValidationError(f"frame must be >= 0, got {frame}")
        image_format = payload.get("format", "png")
        quality = int(payload.get("quality", 80))
        job = RenderJobSpec.from_options(
            composition_id=composition_id,
            input_props=payload.get("inputProps") or {},
            width=payload.get("width", 1920),
            height=payload.get("height", 1080),
            scale=payload.get("scale", 1.0),
            start_frame=0,
            end_frame=frame,
            image_format=image_format,
            image_quality=quality,
            output_path=output_dir,
        )
    except (RenderValidationError, TypeError, ValueError) as exc:
        return _error(str(exc), 400)

    ext = "jpg" if job.image_format == "jpeg" else job.image_format
    output_path = default_output_path(f"{composition_id}-frame{frame}", ext, output_dir)
    started = time.time()
    try:
        await orchestrator.render_still(job, frame, output_path, job.image_format, job.image_quality)
    except RenderError as exc:
        logger.error(f"❌ Still capture failed: {exc}")
        return _error(str(exc), 500)

    return web.json_response(
        {
            "outputPath": output_path,
            "downloadUrl": _download_url(request, output_path),
            "durationMs": int((time.time() - started) * 1000),
        }
    )


async def handle_codecs(request: web.Request) -> web.Response:
    return web.json_response({"codecs": list_codecs()})


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


def create_app(
    orchestrator: Optional[RenderOrchestrator] = None,
    output_dir: str = OUTPUT_DIR,
) -> web.Application:
    ensure_directory(output_dir)
    app = web.Application()
    app[ORCHESTRATOR_KEY] = orchestrator or RenderOrchestrator()
    app[OUTPUT_DIR_KEY] = os.path.abspath(output_dir)
    app.router.add_post("/api/render", handle_render)
    app.router.add_post("/api/still", handle_still)
    app.router.add_get("/api/codecs", handle_codecs)
    app.router.add_get("/health", handle_health)
    app.router.add_static("/outputs", output_dir, show_index=False)
    return app


def run_server(host: str = SERVER_HOST, port: int = SERVER_PORT, output_dir: str = OUTPUT_DIR) -> None:
    logger.info(f"🚀 Render server running on http://{host}:{port}")
    logger.info("   POST /api/render  - Render video (NDJSON progress stream)")
    logger.info("   POST /api/still   - Capture single frame")
    logger.info("   GET  /api/codecs  - List available codecs")
    web.run_app(create_app(output_dir=output_dir), host=host, port=port, print=None)
