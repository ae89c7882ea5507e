"""
Data model for render jobs, segments, audio tracks and results.
"""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from config import (
    DEFAULT_CODEC,
    DEFAULT_DURATION_IN_FRAMES,
    DEFAULT_FPS,
    DEFAULT_HEIGHT,
    DEFAULT_WIDTH,
)
from framecast.errors import RenderValidationError
from framecast.codecs import CodecProfile, get_codec_profile

ImageFormat = Literal["png", "jpeg"]


def _first_error_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value").removeprefix("Value error, ")
    return f"{location}: {message}" if location else message


class RenderJobSpec(BaseModel):
    """One render request, validated before any subprocess starts.

    Fields:
        composition_id: scene identifier understood by the frontend
        input_props: opaque props handed to the scene
        width / height: composition size before scaling
        fps: frames per second
        start_frame / end_frame: inclusive frame range
        codec: codec id (see framecast.codecs.CODECS)
        crf / bitrate: quality knobs, bitrate wins when both are set
        scale: output scale factor applied to the viewport
        muted: skip audio collection and mixing
        output_path: final file (or directory in sequence mode)
        concurrency: number of frame workers (K)
        image_sequence: write stills instead of a video
    """

    model_config = ConfigDict(frozen=True)

    composition_id: str = Field(min_length=1)
    input_props: Dict[str, Any] = Field(default_factory=dict)
    width: int = DEFAULT_WIDTH
    height: int = DEFAULT_HEIGHT
    fps: int = DEFAULT_FPS
    start_frame: int = 0
    end_frame: int = DEFAULT_DURATION_IN_FRAMES - 1
    codec: str = DEFAULT_CODEC
    crf: Optional[int] = None
    bitrate: Optional[str] = None
    scale: float = 1.0
    muted: bool = False
    output_path: str
    concurrency: int = 1
    image_sequence: bool = False
    image_format: ImageFormat = "png"
    image_quality: int = 80
    prores_profile: str = "hq"

    @model_validator(mode="after")
    def _check_job(self) -> "RenderJobSpec":
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"width and height must be positive, got {self.width}x{self.height}")
        if self.width > 7680 or self.height > 7680:
            raise ValueError(f"dimensions exceed maximum of 7680, got {self.width}x{self.height}")
        if self.fps <= 0 or self.fps > 120:
            raise ValueError(f"fps must be between 1 and 120, got {self.fps}")
        if self.start_frame < 0:
            raise ValueError(f"start frame must be >= 0, got {self.start_frame}")
        if self.start_frame > self.end_frame:
            raise ValueError(
                f"start frame ({self.start_frame}) must be <= end frame ({self.end_frame})"
            )
        if not 0.1 <= self.scale <= 10:
            raise ValueError(f"scale must be between 0.1 and 10, got {self.scale}")
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if not 0 <= self.image_quality <= 100:
            raise ValueError(f"quality must be between 0 and 100, got {self.image_quality}")

        profile = get_codec_profile(self.codec)
        if self.crf is not None:
            if not profile.supports_crf:
                raise ValueError(f"codec {self.codec} does not accept crf")
            low, high = profile.crf_range
            if not low <= self.crf <= high:
                raise ValueError(f"crf for {self.codec} must be between {low} and {high}, got {self.crf}")
        return self

    @classmethod
    def from_options(cls, **options: Any) -> "RenderJobSpec":
        """Build a job, reporting every problem as RenderValidationError."""
        try:
            return cls(**options)
        except ValidationError as exc:
            raise RenderValidationError(_first_error_message(exc)) from exc

    @property
    def total_frames(self) -> int:
        return self.end_frame - self.start_frame + 1

    @property
    def profile(self) -> CodecProfile:
        return get_codec_profile(self.codec)

    @property
    def scaled_width(self) -> int:
        return round(self.width * self.scale)

    @property
    def scaled_height(self) -> int:
        return round(self.height * self.scale)


class Segment(BaseModel):
    """A contiguous partial render produced by one worker."""

    worker_index: int
    start_frame: int
    end_frame: int
    file_path: str

    @property
    def frame_count(self) -> int:
        return self.end_frame - self.start_frame + 1


class AudioTrackDescriptor(BaseModel):
    """An audio source the scene registered while rendering.

    volume is either a constant gain or one gain sample per frame, starting at
    start_frame (a frame-sampled volume function).
    """

    model_config = ConfigDict(populate_by_name=True)

    source_url: str = Field(alias="src")
    start_frame: int = Field(default=0, alias="startFrame")
    end_frame: Optional[int] = Field(default=None, alias="endFrame")
    volume: Union[float, List[float]] = 1.0
    loop: bool = False
    playback_rate: float = Field(default=1.0, alias="playbackRate")
    muted: bool = False


class RenderResult(BaseModel):
    output_path: str
    codec: str
    total_frames: int
    worker_count: int
    segments: List[Segment] = Field(default_factory=list)
    audio_tracks: List[AudioTrackDescriptor] = Field(default_factory=list)
    audio_mixed: bool = False
    duration_ms: int = 0


class RenderRequest(BaseModel):
    """Request shape shared by the command line and the streaming endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    composition_id: str = Field(alias="compositionId")
    codec: str = DEFAULT_CODEC
    crf: Optional[int] = None
    bitrate: Optional[str] = None
    scale: float = 1.0
    width: int = DEFAULT_WIDTH
    height: int = DEFAULT_HEIGHT
    fps: int = DEFAULT_FPS
    start_frame: int = Field(default=0, alias="startFrame")
    end_frame: Optional[int] = Field(default=None, alias="endFrame")
    duration_in_frames: Optional[int] = Field(default=None, alias="durationInFrames")
    muted: bool = False
    input_props: Dict[str, Any] = Field(default_factory=dict, alias="inputProps")
    concurrency: int = 1
    image_sequence: bool = Field(default=False, alias="imageSequence")
    image_format: ImageFormat = Field(default="png", alias="imageFormat")
    image_quality: int = Field(default=80, alias="imageQuality")

    @classmethod
    def parse(cls, payload: Dict[str, Any]) -> "RenderRequest":
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise RenderValidationError(_first_error_message(exc)) from exc

    def resolved_end_frame(self) -> int:
        if self.end_frame is not None:
            return self.end_frame
        duration = self.duration_in_frames or DEFAULT_DURATION_IN_FRAMES
        return duration - 1

    def to_job_spec(self, output_path: str) -> RenderJobSpec:
        return RenderJobSpec.from_options(
            composition_id=self.composition_id,
            input_props=self.input_props,
            width=self.width,
            height=self.height,
            fps=self.fps,
            start_frame=self.start_frame,
            end_frame=self.resolved_end_frame(),
            codec=self.codec,
            crf=self.crf,
            bitrate=self.bitrate,
            scale=self.scale,
            muted=self.muted,
            output_path=output_path,
            concurrency=self.concurrency,
            image_sequence=self.image_sequence,
            image_format=self.image_format,
            image_quality=self.image_quality,
        )
