"""
Main module for framecast.
Command line entry point: render videos, stills and batches, list codecs,
or run the render server.
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from config import (
    DEFAULT_BATCH_CONCURRENCY,
    DEFAULT_CODEC,
    DEFAULT_CONCURRENCY,
    FRONTEND_URL,
    OUTPUT_DIR,
    SERVER_HOST,
    SERVER_PORT,
)
from framecast.batch import load_data_file, render_batch
from framecast.codecs import CODECS, get_codec_profile, list_codecs
from framecast.errors import BatchJobFailure, RenderError, RenderValidationError
from framecast.models import RenderJobSpec, RenderRequest
from framecast.renderer.frame_driver import ReadyState
from framecast.renderer.orchestrator import RenderOrchestrator, stream_render
from framecast.reporter import ProgressEvent, ProgressReporter, StatusEvent, ndjson_sink
from utils.helpers import default_output_path, initialize_required_directories, load_json
from utils.logger import set_console_level, setup_logger

logger = setup_logger(__name__)


def parse_frame_range(value: Optional[str]) -> Optional[Tuple[int, int]]:
    """'0-59' -> (0, 59); '42' -> (42, 42)."""
    if not value:
        return None
    parts = value.split("-")
    try:
        if len(parts) == 1:
            frame = int(parts[0])
            return frame, frame
        if len(parts) == 2:
            return int(parts[0]), int(parts[1])
    except ValueError:
        pass
    raise RenderValidationError(f'Invalid frame range "{value}", expected "start-end"')


def load_props(props: Optional[str], props_file: Optional[str]) -> Dict[str, Any]:
    """Input props from --props-file or an inline --props JSON object."""
    try:
        if props_file:
            data = load_json(props_file)
        elif props:
            data = json.loads(props)
        else:
            return {}
    except (OSError, json.JSONDecodeError) as exc:
        raise RenderValidationError(f"Could not read input props: {exc}") from exc
    if not isinstance(data, dict):
        raise RenderValidationError("Input props must be a JSON object")
    return data


def console_sink(event) -> None:
    """Human-readable progress on stdout."""
    if isinstance(event, ProgressEvent):
        end = "\n" if event.frame >= event.total else ""
        print(f"\r   Rendering: frame {event.frame}/{event.total} ({event.percent}%)", end=end, flush=True)
    elif isinstance(event, StatusEvent):
        prefix = "[WARNING] " if event.level == "warning" else ""
        print(f"   {prefix}{event.message}")
    elif event.type == "complete":
        print(f"\n✅ Render complete in {event.duration_ms / 1000:.1f}s")
        print(f"   Output: {event.output_path}")
    elif event.type == "error":
        print(f"\n❌ Render failed: {event.message}")


def needs_metadata(args: argparse.Namespace) -> bool:
    """Size, fps or duration left to the composition itself."""
    return any(value is None for value in (args.width, args.height, args.fps, args.duration))


def build_render_job(args: argparse.Namespace, metadata: Optional[ReadyState] = None) -> RenderJobSpec:
    """
    Build the job from the arguments. Values the arguments leave out come from
    `metadata` when given, and the frame range is clamped to the duration.
    """
    metadata = metadata or ReadyState()
    duration = args.duration or metadata.duration_in_frames
    frame_range = parse_frame_range(args.frames)
    if frame_range and duration:
        frame_range = (frame_range[0], min(frame_range[1], duration - 1))
    payload: Dict[str, Any] = {
        "compositionId": args.composition,
        "codec": args.codec,
        "crf": args.crf,
        "bitrate": args.bitrate,
        "scale": args.scale,
        "muted": args.muted,
        "inputProps": load_props(args.props, args.props_file),
        "concurrency": args.concurrency,
        "imageSequence": args.sequence,
        "imageFormat": args.image_format,
        "imageQuality": args.quality,
        "durationInFrames": duration,
        "width": args.width or metadata.width,
        "height": args.height or metadata.height,
        "fps": args.fps or metadata.fps,
    }
    if frame_range:
        payload["startFrame"], payload["endFrame"] = frame_range
    request = RenderRequest.parse({k: v for k, v in payload.items() if v is not None})

    if args.output:
        output_path = os.path.abspath(args.output)
    elif request.image_sequence:
        output_path = os.path.join(args.output_dir, request.composition_id)
    else:
        ext = get_codec_profile(request.codec).container_extension
        output_path = default_output_path(request.composition_id, ext, args.output_dir)
    return request.to_job_spec(output_path)


async def run_render(args: argparse.Namespace) -> int:
    # Argument errors surface before a browser starts
    job = build_render_job(args)
    orchestrator = RenderOrchestrator(frontend_url=args.frontend_url)
    if needs_metadata(args):
        logger.info(f"Fetching composition metadata for {job.composition_id}")
        metadata = await orchestrator.probe_composition(job.composition_id, job.input_props)
        job = build_render_job(args, metadata)

    if not args.ndjson:
        print("\n🎬 framecast render\n")
        print(f"  Composition: {job.composition_id}")
        print(f"  Codec:       {job.codec}")
        if job.crf is not None:
            print(f"  Quality:     CRF {job.crf}")
        print(f"  Resolution:  {job.scaled_width}x{job.scaled_height} @ {job.fps}fps")
        print(f"  Frames:      {job.start_frame}-{job.end_frame}")
        if job.input_props:
            print(f"  Props:       {json.dumps(job.input_props)}")
        print(f"  Output:      {job.output_path}\n")

    reporter = ProgressReporter(ndjson_sink(sys.stdout) if args.ndjson else console_sink)
    result = await stream_render(job, reporter, orchestrator)
    return 0 if result is not None else 1


async def run_still(args: argparse.Namespace) -> int:
    ext = "jpg" if args.image_format == "jpeg" else args.image_format
    output_path = args.output or default_output_path(
        f"{args.composition}-frame{args.frame}", ext, args.output_dir
    )
    options: Dict[str, Any] = {
        "composition_id": args.composition,
        "input_props": load_props(args.props, args.props_file),
        "scale": args.scale,
        "start_frame": 0,
        "end_frame": args.frame,
        "image_format": args.image_format,
        "image_quality": args.quality,
        "output_path": output_path,
    }
    for key in ("width", "height"):
        if getattr(args, key) is not None:
            options[key] = getattr(args, key)
    job = RenderJobSpec.from_options(**options)

    orchestrator = RenderOrchestrator(frontend_url=args.frontend_url)
    path = await orchestrator.render_still(job, args.frame, output_path, args.image_format, args.quality)
    print(f"✅ Still captured: {path}")
    return 0


async def run_batch(args: argparse.Namespace) -> int:
    rows = load_data_file(args.data)
    base_options: Dict[str, Any] = {
        "codec": args.codec,
        "crf": args.crf,
        "scale": args.scale,
        "muted": args.muted,
        "concurrency": args.workers,
        "input_props": load_props(args.props, args.props_file),
        "width": args.width,
        "height": args.height,
        "fps": args.fps,
    }
    frame_range = parse_frame_range(args.frames)
    if frame_range:
        base_options["start_frame"], base_options["end_frame"] = frame_range

    print("\n📦 framecast batch render\n")
    print(f"  Composition: {args.composition}")
    print(f"  Data file:   {args.data}")
    print(f"  Jobs:        {len(rows)}")
    print(f"  Concurrency: {args.concurrency}")
    print(f"  Output dir:  {args.output_dir}\n")

    orchestrator = RenderOrchestrator(frontend_url=args.frontend_url)
    try:
        summary = await render_batch(
            args.composition,
            rows,
            base_options,
            args.output_dir,
            output_pattern=args.output_pattern,
            concurrency=args.concurrency,
            fail_fast=args.fail_fast,
            orchestrator=orchestrator,
        )
    except BatchJobFailure as exc:
        print(f"\n❌ Batch stopped (--fail-fast): {exc}")
        return 1

    print("\n  ─── Summary ───")
    print(f"  Total:    {len(summary.results)}")
    print(f"  Success:  {summary.succeeded}")
    if summary.failed:
        print(f"  Failed:   {summary.failed}")
    print(f"  Time:     {summary.duration_s:.1f}s")
    print(f"  Output:   {args.output_dir}\n")
    return 1 if summary.failed else 0


def run_codecs(args: argparse.Namespace) -> int:
    print("\nAvailable codecs:\n")
    for codec in list_codecs():
        crf = f"crf {CODECS[codec['id']].crf_range[0]}-{CODECS[codec['id']].crf_range[1]}" if codec["supportsCrf"] else "no crf"
        print(f"  {codec['id']:<8} .{codec['extension']:<5} {crf:<12} {codec['description']}")
    print()
    return 0


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--width", type=int, help="Composition width in pixels")
    parser.add_argument("--height", type=int, help="Composition height in pixels")
    parser.add_argument("--scale", type=float, default=1.0, help="Output scale factor (0.1-10)")
    parser.add_argument("--props", help="Input props as an inline JSON object")
    parser.add_argument("--props-file", help="Input props from a JSON file")
    parser.add_argument("--output-dir", default=OUTPUT_DIR, help=f"Output directory (default: {OUTPUT_DIR})")
    parser.add_argument("--frontend-url", default=FRONTEND_URL, help=f"Scene frontend (default: {FRONTEND_URL})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="framecast - Render browser scenes to video, frame by frame",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py render intro                          # intro-<timestamp>.mp4 in data/output/
  python main.py render intro out.webm --codec vp9     # Explicit output and codec
  python main.py render intro --frames 0-59 --concurrency 3
  python main.py render intro --codec gif --scale 0.5  # Palette-optimized GIF
  python main.py render intro --sequence --image-format jpeg
  python main.py still intro --frame 42                # Single PNG frame
  python main.py batch welcome --data users.csv --output-pattern "{name}-welcome.mp4"
  python main.py serve --port 4000                     # NDJSON render server
        """,
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level (files always log DEBUG)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    render = subparsers.add_parser("render", help="Render a composition to video or an image sequence")
    render.add_argument("composition", help="Composition id")
    render.add_argument("output", nargs="?", help="Output file (or directory with --sequence)")
    render.add_argument("--codec", default=DEFAULT_CODEC, choices=list(CODECS), help="Output codec")
    render.add_argument("--crf", type=int, help="Constant rate factor (codec dependent range)")
    render.add_argument("--bitrate", help="Target video bitrate, e.g. 5M (replaces crf)")
    render.add_argument("--frames", help="Frame range start-end (inclusive)")
    render.add_argument("--duration", type=int, help="Duration in frames (default: read from the composition)")
    render.add_argument("--fps", type=int, help="Frames per second")
    render.add_argument("--concurrency", type=int, default=DEFAULT_CONCURRENCY, help="Parallel frame workers")
    render.add_argument("--muted", action="store_true", help="Skip audio")
    render.add_argument("--sequence", action="store_true", help="Write an image sequence instead of a video")
    render.add_argument("--image-format", default="png", choices=["png", "jpeg"], help="Image sequence format")
    render.add_argument("--quality", type=int, default=80, help="JPEG quality (0-100)")
    render.add_argument("--ndjson", action="store_true", help="Print progress events as NDJSON on stdout")
    _add_common_options(render)

    still = subparsers.add_parser("still", help="Capture a single frame")
    still.add_argument("composition", help="Composition id")
    still.add_argument("output", nargs="?", help="Output image")
    still.add_argument("--frame", type=int, default=0, help="Frame to capture")
    still.add_argument("--image-format", default="png", choices=["png", "jpeg"], help="Image format")
    still.add_argument("--quality", type=int, default=80, help="JPEG quality (0-100)")
    _add_common_options(still)

    batch = subparsers.add_parser("batch", help="Render one video per row of a CSV/JSON data file")
    batch.add_argument("composition", help="Composition id")
    batch.add_argument("--data", required=True, help="Data file (.csv or .json)")
    batch.add_argument("--codec", default=DEFAULT_CODEC, choices=list(CODECS), help="Output codec")
    batch.add_argument("--crf", type=int, help="Constant rate factor")
    batch.add_argument("--frames", help="Frame range start-end (default: whole composition)")
    batch.add_argument("--fps", type=int, help="Frames per second")
    batch.add_argument("--muted", action="store_true", help="Skip audio")
    batch.add_argument(
        "--concurrency", type=int, default=DEFAULT_BATCH_CONCURRENCY, help="Jobs rendered at the same time"
    )
    batch.add_argument("--workers", type=int, default=1, help="Frame workers per job")
    batch.add_argument("--output-pattern", help='Filename pattern, e.g. "{name}-{_index}.mp4"')
    batch.add_argument("--fail-fast", action="store_true", help="Stop starting new jobs after the first failure")
    _add_common_options(batch)

    serve = subparsers.add_parser("serve", help="Run the HTTP render server")
    serve.add_argument("--host", default=SERVER_HOST, help=f"Bind address (default: {SERVER_HOST})")
    serve.add_argument("--port", type=int, default=SERVER_PORT, help=f"Port (default: {SERVER_PORT})")
    serve.add_argument("--output-dir", default=OUTPUT_DIR, help="Directory served under /outputs")

    subparsers.add_parser("codecs", help="List available codecs")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.log_level:
        set_console_level(args.log_level)
    initialize_required_directories()

    try:
        if args.command == "render":
            return asyncio.run(run_render(args))
        if args.command == "still":
            return asyncio.run(run_still(args))
        if args.command == "batch":
            return asyncio.run(run_batch(args))
        if args.command == "codecs":
            return run_codecs(args)
        if args.command == "serve":
            from framecast.server import run_server

            Path(args.output_dir).mkdir(parents=True, exist_ok=True)
            run_server(args.host, args.port, args.output_dir)
            return 0
    except RenderValidationError as exc:
        print(f"Error: {exc}")
        return 1
    except RenderError as exc:
        logger.error(f"{type(exc).__name__}: {exc}")
        print(f"❌ {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
