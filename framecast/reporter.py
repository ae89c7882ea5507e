"""
Progress / event reporter.

A render job speaks to its caller through an ordered stream of events, one
JSON object per line (NDJSON):

    start                      exactly once, first
    status / progress          any number, progress frames never go backwards
    complete | error           exactly once, last

ProgressReporter enforces that ordering; sinks decide where lines go (a
stream, an HTTP response queue, a list in tests).
"""
from __future__ import annotations

import asyncio
import sys
from typing import Callable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from utils.logger import setup_logger

logger = setup_logger(__name__)


class _Event(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_line(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class StartEvent(_Event):
    type: Literal["start"] = "start"
    composition_id: str
    codec: str
    frames: int
    concurrency: int = 1


class StatusEvent(_Event):
    type: Literal["status"] = "status"
    message: str
    level: Literal["info", "warning"] = "info"


class ProgressEvent(_Event):
    type: Literal["progress"] = "progress"
    frame: int
    total: int
    percent: int


class CompleteEvent(_Event):
    type: Literal["complete"] = "complete"
    output_path: str
    download_url: Optional[str] = None
    filename: str
    duration_ms: int


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    message: str
    error_type: Optional[str] = None


Event = Union[StartEvent, StatusEvent, ProgressEvent, CompleteEvent, ErrorEvent]
EventSink = Callable[[Event], None]


def progress_percent(frame: int, total: int) -> int:
    """floor(frame / total * 100), 0 for an empty job."""
    if total <= 0:
        return 0
    return (frame * 100) // total


class ProgressReporter:
    """Turns render callbacks into a well-ordered event stream."""

    def __init__(self, sink: EventSink):
        self.sink = sink
        self.started = False
        self.finished = False
        self.last_frame = 0
        self.total = 0

    def _emit(self, event: Event) -> None:
        self.sink(event)

    def start(self, composition_id: str, codec: str, frames: int, concurrency: int = 1) -> None:
        if self.started:
            raise RuntimeError("start event already emitted")
        self.started = True
        self.total = frames
        self._emit(StartEvent(composition_id=composition_id, codec=codec, frames=frames, concurrency=concurrency))

    def status(self, message: str, level: str = "info") -> None:
        self._check_open()
        self._emit(StatusEvent(message=message, level=level))

    def warning(self, message: str) -> None:
        self.status(message, level="warning")

    def progress(self, frame: int, total: Optional[int] = None) -> None:
        """Report frames completed so far. Stale (non-increasing) values are dropped."""
        self._check_open()
        total = self.total if total is None else total
        if frame <= self.last_frame:
            return
        self.last_frame = frame
        self._emit(ProgressEvent(frame=frame, total=total, percent=progress_percent(frame, total)))

    def complete(
        self,
        output_path: str,
        filename: str,
        duration_ms: int,
        download_url: Optional[str] = None,
    ) -> None:
        self._check_open()
        self.finished = True
        self._emit(
            CompleteEvent(
                output_path=output_path,
                download_url=download_url,
                filename=filename,
                duration_ms=duration_ms,
            )
        )

    def error(self, exc: Union[BaseException, str]) -> None:
        if self.finished:
            logger.warning(f"Error after terminal event ignored: {exc}")
            return
        self.finished = True
        if isinstance(exc, BaseException):
            self._emit(ErrorEvent(message=str(exc), error_type=type(exc).__name__))
        else:
            self._emit(ErrorEvent(message=exc))

    def _check_open(self) -> None:
        if not self.started:
            raise RuntimeError("start event must come first")
        if self.finished:
            raise RuntimeError("event stream already terminated")


def ndjson_sink(stream=None) -> EventSink:
    """Write one JSON line per event to `stream` (stdout by default)."""
    stream = stream or sys.stdout

    def sink(event: Event) -> None:
        stream.write(event.to_line() + "\n")
        stream.flush()

    return sink


def collecting_sink() -> "tuple[EventSink, List[Event]]":
    """Sink that keeps every event in a list. Returns (sink, events)."""
    events: List[Event] = []
    return events.append, events


def queue_sink(queue: asyncio.Queue) -> EventSink:
    """Push events into an asyncio queue (streaming HTTP responses)."""
    return queue.put_nowait
