"""Shared fakes: a browser-free frame driver and an ffmpeg-free runner."""

import asyncio
from pathlib import Path

import pytest

from framecast.errors import RenderError
from framecast.models import RenderJobSpec
from framecast.renderer.frame_driver import ReadyState


class FakeDriver:
    """Frame driver stand-in. Frame bytes are b'frame-<n>'."""

    def __init__(self, name, fail_at=None, tracks=()):
        self.name = name
        self.fail_at = fail_at
        self.tracks = list(tracks)
        self.frame = None
        self.loaded_url = None
        self.committed = []
        self.disposed = False

    async def load(self, scene_url, timeout_ms):
        self.loaded_url = scene_url
        return ReadyState(width=1920, height=1080, fps=30, duration_in_frames=60)

    async def commit_frame(self, frame):
        self.frame = frame
        self.committed.append(frame)
        await asyncio.sleep(0)

    async def await_readiness(self, timeout_ms):
        return ("ready", self.frame)

    async def capture(self, token, image_format="png", quality=None, path=None):
        if token != ("ready", self.frame):
            raise RenderError("stale token")
        if self.fail_at == self.frame:
            raise RuntimeError("capture exploded")
        data = f"frame-{self.frame}".encode()
        if path:
            Path(path).write_bytes(data)
        return data

    async def collect_audio_tracks(self):
        return list(self.tracks)

    async def dispose(self):
        self.disposed = True


class FakeDriverFactory:
    def __init__(self, fail_at=None, tracks=()):
        self.fail_at = fail_at
        self.tracks = tracks
        self.drivers = []

    async def __call__(self, width, height, scale=1.0, name="renderer"):
        driver = FakeDriver(name, fail_at=self.fail_at, tracks=self.tracks)
        self.drivers.append(driver)
        return driver


class FakeSession:
    """Encoder session stand-in that records frames and writes a dummy file."""

    def __init__(self, output_path, stage):
        self.output_path = output_path
        self.stage = stage
        self.image_format = "png"
        self.quality = None
        self.frames = []
        self.started = False
        self.closed = False
        self.aborted = False

    async def start(self):
        self.started = True

    async def write_frame(self, frame, data):
        assert data == f"frame-{frame}".encode()
        self.frames.append(frame)

    async def close(self):
        self.closed = True
        Path(self.output_path).write_bytes(b"video")
        return self.output_path

    async def abort(self):
        self.aborted = True


class FakeFFmpeg:
    def __init__(self):
        self.sessions = []
        self.runs = []
        self.concat_lists = []

    def video_encoder(self, job, output_path, stage="encode"):
        session = FakeSession(output_path, stage)
        self.sessions.append(session)
        return session

    def lossless_intermediate(self, output_path, fps, stage="intermediate"):
        session = FakeSession(output_path, stage)
        self.sessions.append(session)
        return session

    async def run(self, args, stage):
        self.runs.append((stage, list(args)))
        if stage == "concat":
            list_file = args[args.index("-i") + 1]
            self.concat_lists.append(Path(list_file).read_text())
        Path(args[-1]).write_bytes(b"out")

    @property
    def stages(self):
        return [stage for stage, _ in self.runs]


@pytest.fixture
def make_driver_factory():
    return FakeDriverFactory


@pytest.fixture
def fake_ffmpeg():
    return FakeFFmpeg()


@pytest.fixture
def make_job(tmp_path):
    def _make(**overrides):
        options = {
            "composition_id": "intro",
            "start_frame": 0,
            "end_frame": 59,
            "fps": 30,
            "codec": "h264",
            "output_path": str(tmp_path / "intro.mp4"),
        }
        options.update(overrides)
        return RenderJobSpec.from_options(**options)

    return _make
