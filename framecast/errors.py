"""
Error taxonomy for the render pipeline.

Fatal errors derive from RenderError and bubble to the nearest job boundary,
where they are serialized as a terminal `error` event. RenderValidationError
is raised before any browser or ffmpeg process starts.
"""
from __future__ import annotations

from typing import Sequence


class RenderError(RuntimeError):
    """Base class for failures that terminate a render job."""


class RenderValidationError(ValueError):
    """Malformed job parameters (bad range, unknown codec, duplicate filenames...)."""


class SceneLoadTimeout(RenderError):
    """The renderer instance never signalled that the scene was ready."""


class ReadinessTimeout(RenderError):
    """A delay handle never resolved, or the frame never became capturable."""

    def __init__(self, message: str, *, labels: Sequence[str] = ()):
        super().__init__(message)
        self.labels = list(labels)


class RenderCancelled(ReadinessTimeout):
    """The scene cancelled the render itself (cancelRender on the page)."""


class WorkerFailure(RenderError):
    """A frame commit or capture failed inside a render worker."""

    def __init__(self, message: str, *, worker_index: int = 0, frame: int | None = None):
        super().__init__(message)
        self.worker_index = worker_index
        self.frame = frame


class EncodingFailure(RenderError):
    """An ffmpeg invocation exited non-zero or could not be started."""

    def __init__(
        self,
        message: str,
        *,
        stage: str = "ffmpeg",
        returncode: int | None = None,
        stderr_tail: str | None = None,
    ):
        super().__init__(message)
        self.stage = stage
        self.returncode = returncode
        self.stderr_tail = stderr_tail

    def __str__(self) -> str:
        return f"[{self.stage}] {super().__str__()}"


class AudioMixFailure(RenderError):
    """Audio mixing failed. Callers downgrade this to a warning."""


class BatchJobFailure(RenderError):
    """One batch item failed while fail-fast was requested."""

    def __init__(self, message: str, *, index: int, results: list | None = None):
        super().__init__(message)
        self.index = index
        # Results of every job that settled before the batch stopped
        self.results = results or []
