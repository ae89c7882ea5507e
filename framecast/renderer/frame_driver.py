"""
Frame driver: one headless Chromium page showing one scene.

The driver moves the scene to a frame, waits until the page's readiness
registry is empty and captures the render container. The scene reaches the
registry through Playwright bindings: delayRender / continueRender /
cancelRender are defined on `window` by an init script and forward to the
Python-side ReadinessRegistry owned by this driver.

Per-frame state machine:

    IDLE -> COMMITTING -> COMMITTED -> READY -> (capture) -> IDLE

capture() only accepts the ReadyToken issued by await_readiness() for the
frame currently committed, and each token is good for one capture.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode, urlparse

from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from config import (
    ALLOW_REMOTE_FRONTEND,
    BROWSER_ARGS,
    BROWSER_EXECUTABLE,
    BROWSER_HEADLESS,
    FRAME_SETTLE_MS,
    READINESS_TIMEOUT_MS,
    RENDER_CONTAINER_SELECTOR,
    SCENE_LOAD_TIMEOUT_MS,
)
from framecast.errors import RenderError, RenderValidationError, SceneLoadTimeout
from framecast.models import AudioTrackDescriptor
from framecast.renderer.readiness import ReadinessRegistry
from utils.logger import setup_logger

logger = setup_logger(__name__)

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1", "0.0.0.0")

# Installed before any scene script runs. Handle ids are allocated by the
# Python registry, so the page keeps its own local ids and maps them to the
# pending binding promises. __framecastFlush() resolves once every binding
# call the page has made so far has reached Python.
INIT_SCRIPT = """
(() => {
  if (window.__framecastInstalled) return;
  window.__framecastInstalled = true;

  const inflight = new Set();
  const track = (promise) => {
    inflight.add(promise);
    promise.finally(() => inflight.delete(promise));
    return promise;
  };
  const handles = new Map();
  let nextLocal = 0;

  window.delayRender = (label, options) => {
    const opts = (label && typeof label === 'object') ? label : (options || {});
    const text = typeof label === 'string' ? label : 'Unnamed delay';
    const local = ++nextLocal;
    handles.set(local, track(window.__framecastBeginDelay(
      text,
      opts.timeoutInMilliseconds ?? null,
      opts.retries ?? 0,
    )));
    return local;
  };

  window.continueRender = (local) => {
    const pending = handles.get(local);
    if (!pending) {
      console.warn(`continueRender() called with unknown handle ${local}`);
      return;
    }
    handles.delete(local);
    track(pending.then((id) => window.__framecastEndDelay(id)));
  };

  window.cancelRender = (error) => {
    const message = error && error.message ? error.message : String(error);
    track(window.__framecastCancelRender(message));
  };

  window.__framecastFlush = async () => {
    while (inflight.size > 0) {
      await Promise.allSettled(Array.from(inflight));
    }
    return true;
  };
})();
"""

# Two animation frames: the first runs after React commits, the second after paint.
PAINT_ACK_SCRIPT = """
() => new Promise((resolve) => {
  requestAnimationFrame(() => requestAnimationFrame(() => resolve(true)));
})
"""

AUDIO_TRACKS_SCRIPT = """
() => {
  const tracks = window.__FRAMECAST_AUDIO_TRACKS || [];
  const meta = window.__FRAMECAST_COMPOSITION || {};
  return tracks.map((track) => {
    const start = track.startFrame || 0;
    let volume = track.volume ?? 1;
    if (typeof volume === 'function') {
      const end = track.endFrame ?? ((meta.durationInFrames || start + 1) - 1);
      volume = Array.from({ length: Math.max(end - start + 1, 1) }, (_, i) => Number(volume(i)));
    }
    return {
      src: track.src || null,
      startFrame: start,
      endFrame: track.endFrame ?? null,
      volume,
      playbackRate: track.playbackRate || 1,
      loop: Boolean(track.loop),
      muted: Boolean(track.muted),
    };
  });
}
"""


class DriverState(str, Enum):
    IDLE = "idle"
    COMMITTING = "committing"
    COMMITTED = "committed"
    READY = "ready"


@dataclass(frozen=True)
class ReadyToken:
    """Proof that `frame` was committed and the registry drained afterwards."""

    frame: int
    serial: int


@dataclass
class ReadyState:
    """Composition metadata the scene advertises once loaded."""

    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[int] = None
    duration_in_frames: Optional[int] = None

    @classmethod
    def from_metadata(cls, meta: Optional[Dict[str, Any]]) -> "ReadyState":
        meta = meta or {}
        return cls(
            width=meta.get("width"),
            height=meta.get("height"),
            fps=meta.get("fps"),
            duration_in_frames=meta.get("durationInFrames"),
        )


def validate_frontend_url(url: str, allow_remote: bool = ALLOW_REMOTE_FRONTEND) -> str:
    """Only http(s) frontends, and only local ones unless remote is allowed."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise RenderValidationError(f"Invalid frontend URL protocol: {parsed.scheme or '(none)'}")
    if not parsed.hostname:
        raise RenderValidationError(f"Invalid frontend URL: {url}")
    if not allow_remote and parsed.hostname not in LOCAL_HOSTS:
        raise RenderValidationError(
            f"Frontend URL must point to localhost, got {parsed.hostname}. "
            f"Set ALLOW_REMOTE_FRONTEND=true to render remote scenes."
        )
    return url


def build_scene_url(
    frontend_url: str,
    composition_id: str,
    input_props: Optional[Dict[str, Any]] = None,
    width: Optional[int] = None,
    height: Optional[int] = None,
    fps: Optional[int] = None,
    duration_in_frames: Optional[int] = None,
) -> str:
    """URL that opens `composition_id` in render mode."""
    params: Dict[str, Any] = {"renderMode": "true", "composition": composition_id}
    if input_props:
        params["props"] = json.dumps(input_props, separators=(",", ":"))
    for key, value in (
        ("width", width),
        ("height", height),
        ("fps", fps),
        ("durationInFrames", duration_in_frames),
    ):
        if value is not None:
            params[key] = value
    separator = "&" if urlparse(frontend_url).query else "?"
    return f"{frontend_url}{separator}{urlencode(params)}"


class FrameDriver:
    """Drives one page. Not safe to share between workers."""

    def __init__(
        self,
        page,
        registry: ReadinessRegistry,
        *,
        browser=None,
        playwright=None,
        container_selector: str = RENDER_CONTAINER_SELECTOR,
        settle_ms: int = FRAME_SETTLE_MS,
        name: str = "renderer",
    ):
        self.page = page
        self.registry = registry
        self.browser = browser
        self.playwright = playwright
        self.container_selector = container_selector
        self.settle_ms = settle_ms
        self.name = name

        self.state = DriverState.IDLE
        self.frame: Optional[int] = None
        self._token: Optional[ReadyToken] = None
        self._serial = 0
        self._disposed = False

    # ------------------------------------------------------------------
    # Bindings
    # ------------------------------------------------------------------
    async def install_bindings(self) -> None:
        await self.page.expose_function("__framecastBeginDelay", self._on_begin_delay)
        await self.page.expose_function("__framecastEndDelay", self._on_end_delay)
        await self.page.expose_function("__framecastCancelRender", self._on_cancel_render)
        await self.page.add_init_script(INIT_SCRIPT)

    async def _on_begin_delay(self, label, timeout_ms=None, retries=0) -> int:
        return self.registry.begin_delay(label, timeout_ms, retries)

    async def _on_end_delay(self, handle_id) -> None:
        self.registry.end_delay(handle_id)

    async def _on_cancel_render(self, message) -> None:
        self.registry.cancel(message)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def load(self, scene_url: str, timeout_ms: int = SCENE_LOAD_TIMEOUT_MS) -> ReadyState:
        """Open the scene and wait for it to announce `window.__ready`."""
        self._check_usable()
        logger.info(f"[{self.name}] Loading: {scene_url}")
        try:
            await self.page.goto(scene_url, wait_until="networkidle", timeout=timeout_ms)
            await self.page.wait_for_function("window.__ready === true", timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise SceneLoadTimeout(
                f"Scene did not become ready within {timeout_ms}ms: {scene_url}"
            ) from exc

        if self.registry.failure is not None:
            raise self.registry.failure

        meta = await self.page.evaluate("() => window.__FRAMECAST_COMPOSITION || null")
        ready = ReadyState.from_metadata(meta)
        logger.debug(f"[{self.name}] Scene ready: {ready}")
        return ready

    async def commit_frame(self, frame: int) -> None:
        """Move the scene to `frame` and wait until the result has been painted."""
        self._check_usable()
        self.state = DriverState.COMMITTING
        self.frame = frame
        self._token = None
        await self.page.evaluate("(f) => window.__setFrame(f)", frame)
        await self.page.evaluate(PAINT_ACK_SCRIPT)
        self.state = DriverState.COMMITTED

    async def await_readiness(self, timeout_ms: int = READINESS_TIMEOUT_MS) -> ReadyToken:
        """
        Wait until no delay handle is outstanding for the committed frame.

        Raises:
            ReadinessTimeout: handles still pending after timeout_ms
            RenderError: the registry failed (delay timeout or cancelRender)
        """
        self._check_usable()
        if self.state is not DriverState.COMMITTED:
            raise RenderError(
                f"[{self.name}] await_readiness() called in state {self.state.value}, "
                f"commit a frame first"
            )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        # Make sure every delayRender() issued by the commit has reached the registry.
        await self.page.evaluate("() => window.__framecastFlush ? window.__framecastFlush() : true")
        await self.registry.wait_until_ready(timeout_ms)
        if self.settle_ms > 0:
            await asyncio.sleep(self.settle_ms / 1000)
            # Work started during the settle still blocks this frame, within the same budget
            remaining_ms = max(0, int((deadline - loop.time()) * 1000))
            await self.registry.wait_until_ready(remaining_ms)

        self._serial += 1
        self._token = ReadyToken(frame=self.frame, serial=self._serial)
        self.state = DriverState.READY
        return self._token

    async def capture(
        self,
        token: ReadyToken,
        image_format: str = "png",
        quality: Optional[int] = None,
        path: Optional[str] = None,
    ) -> bytes:
        """Screenshot the render container of the frame `token` was issued for."""
        self._check_usable()
        if (
            self.state is not DriverState.READY
            or self._token is None
            or token is not self._token
        ):
            raise RenderError(
                f"[{self.name}] capture() needs the ReadyToken of the current frame "
                f"(state={self.state.value}, frame={self.frame})"
            )
        self._token = None
        self.state = DriverState.IDLE

        options: Dict[str, Any] = {"type": image_format}
        if image_format == "jpeg" and quality is not None:
            options["quality"] = quality
        if path:
            options["path"] = path
        return await self.page.locator(self.container_selector).screenshot(**options)

    async def collect_audio_tracks(self) -> List[AudioTrackDescriptor]:
        """Audio sources the scene registered, without muted or source-less ones."""
        raw = await self.page.evaluate(AUDIO_TRACKS_SCRIPT) or []
        tracks = []
        for item in raw:
            if item.get("muted") or not item.get("src"):
                continue
            tracks.append(AudioTrackDescriptor.model_validate(item))
        logger.debug(f"[{self.name}] Found {len(tracks)} audio track(s)")
        return tracks

    async def dispose(self) -> None:
        """Close page, browser and Playwright. Safe to call more than once."""
        if self._disposed:
            return
        self._disposed = True
        self.registry.clear()
        try:
            if self.browser is not None:
                await self.browser.close()
        finally:
            if self.playwright is not None:
                await self.playwright.stop()
        logger.debug(f"[{self.name}] Disposed")

    def _check_usable(self) -> None:
        if self._disposed:
            raise RenderError(f"[{self.name}] driver already disposed")


async def launch_frame_driver(
    width: int,
    height: int,
    scale: float = 1.0,
    name: str = "renderer",
    headless: bool = BROWSER_HEADLESS,
    executable_path: Optional[str] = BROWSER_EXECUTABLE,
    browser_args: Optional[List[str]] = None,
) -> FrameDriver:
    """Launch Chromium with the rendering flag set and return a bound driver."""
    playwright = await async_playwright().start()
    try:
        launch_kwargs: Dict[str, Any] = {
            "headless": headless,
            "args": list(BROWSER_ARGS if browser_args is None else browser_args),
        }
        if executable_path:
            launch_kwargs["executable_path"] = executable_path
        browser = await playwright.chromium.launch(**launch_kwargs)
        context = await browser.new_context(
            viewport={"width": width, "height": height},
            device_scale_factor=scale,
        )
        page = await context.new_page()
        driver = FrameDriver(
            page,
            ReadinessRegistry(name),
            browser=browser,
            playwright=playwright,
            name=name,
        )
        await driver.install_bindings()
    except Exception:
        await playwright.stop()
        raise

    logger.debug(f"[{name}] Browser launched ({width}x{height} @ {scale}x)")
    return driver
