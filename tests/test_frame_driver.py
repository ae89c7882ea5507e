"""Tests for the frame driver against a mocked Playwright page."""

import asyncio
import json
from unittest.mock import AsyncMock, Mock
from urllib.parse import parse_qs, urlparse

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from framecast.errors import ReadinessTimeout, RenderError, RenderValidationError, SceneLoadTimeout
from framecast.renderer.frame_driver import (
    DriverState,
    FrameDriver,
    build_scene_url,
    validate_frontend_url,
)
from framecast.renderer.readiness import ReadinessRegistry


def make_page(screenshot=b"PNGDATA", evaluate_result=None):
    page = Mock()
    page.expose_function = AsyncMock()
    page.add_init_script = AsyncMock()
    page.goto = AsyncMock()
    page.wait_for_function = AsyncMock()
    page.evaluate = AsyncMock(return_value=evaluate_result)
    locator = Mock()
    locator.screenshot = AsyncMock(return_value=screenshot)
    page.locator = Mock(return_value=locator)
    return page


def make_driver(page=None, **kwargs):
    page = page or make_page()
    return FrameDriver(page, ReadinessRegistry("test"), settle_ms=0, **kwargs), page


def test_install_bindings_exposes_registry_functions():
    driver, page = make_driver()
    asyncio.run(driver.install_bindings())

    exposed = [c.args[0] for c in page.expose_function.call_args_list]
    assert exposed == ["__framecastBeginDelay", "__framecastEndDelay", "__framecastCancelRender"]
    script = page.add_init_script.call_args.args[0]
    assert "window.delayRender" in script
    assert "window.continueRender" in script


def test_bindings_forward_to_registry():
    """delayRender / continueRender from the page reach the registry."""
    async def scenario():
        driver, _ = make_driver()
        handle = await driver._on_begin_delay("hero image", 0, 0)
        labels = driver.registry.pending_labels()
        await driver._on_end_delay(handle)
        return handle, labels, driver.registry.is_pending

    handle, labels, pending = asyncio.run(scenario())
    assert handle == 1
    assert labels == ["hero image"]
    assert pending is False


def test_commit_await_capture_cycle():
    """A full frame cycle returns the screenshot and ends back in IDLE."""
    async def scenario():
        driver, page = make_driver()
        await driver.commit_frame(12)
        token = await driver.await_readiness(1000)
        data = await driver.capture(token)
        return driver, page, token, data

    driver, page, token, data = asyncio.run(scenario())
    assert data == b"PNGDATA"
    assert token.frame == 12
    assert driver.state is DriverState.IDLE
    page.evaluate.assert_any_call("(f) => window.__setFrame(f)", 12)
    page.locator.assert_called_with("#render-container")
    page.locator.return_value.screenshot.assert_awaited_once_with(type="png")


def test_capture_jpeg_passes_quality():
    async def scenario():
        driver, page = make_driver()
        await driver.commit_frame(0)
        token = await driver.await_readiness(1000)
        await driver.capture(token, image_format="jpeg", quality=80)
        return page

    page = asyncio.run(scenario())
    page.locator.return_value.screenshot.assert_awaited_once_with(type="jpeg", quality=80)


def test_capture_without_readiness_is_rejected():
    """A frame that never passed await_readiness cannot be captured."""
    async def scenario():
        driver, _ = make_driver()
        await driver.commit_frame(3)
        token = await driver.await_readiness(1000)
        await driver.commit_frame(4)
        with pytest.raises(RenderError):
            await driver.capture(token)

    asyncio.run(scenario())


def test_token_is_single_use():
    async def scenario():
        driver, page = make_driver()
        await driver.commit_frame(1)
        token = await driver.await_readiness(1000)
        await driver.capture(token)
        with pytest.raises(RenderError):
            await driver.capture(token)
        return page

    page = asyncio.run(scenario())
    assert page.locator.return_value.screenshot.await_count == 1


def test_await_readiness_requires_commit():
    async def scenario():
        driver, _ = make_driver()
        with pytest.raises(RenderError):
            await driver.await_readiness(1000)

    asyncio.run(scenario())


def test_pending_delay_blocks_capture():
    """An outstanding delayRender keeps the frame from becoming ready."""
    async def scenario():
        driver, page = make_driver()
        await driver.commit_frame(7)
        driver.registry.begin_delay("slow chart", timeout_ms=0)
        with pytest.raises(ReadinessTimeout) as excinfo:
            await driver.await_readiness(30)
        return page, excinfo.value

    page, error = asyncio.run(scenario())
    assert error.labels == ["slow chart"]
    page.locator.return_value.screenshot.assert_not_awaited()


def test_settle_wait_shares_the_readiness_budget():
    """The wait after the settle delay only gets what is left of timeout_ms."""
    async def scenario():
        registry = Mock()
        registry.wait_until_ready = AsyncMock()
        driver = FrameDriver(make_page(), registry, settle_ms=50)
        await driver.commit_frame(3)
        await driver.await_readiness(1000)
        return [call.args[0] for call in registry.wait_until_ready.await_args_list]

    first, second = asyncio.run(scenario())
    assert first == 1000
    assert 0 <= second <= 950


def test_load_reads_composition_metadata():
    meta = {"width": 1280, "height": 720, "fps": 25, "durationInFrames": 90}
    driver, page = make_driver(make_page(evaluate_result=meta))

    ready = asyncio.run(driver.load("http://localhost:5173/?renderMode=true", 5000))

    assert (ready.width, ready.height, ready.fps, ready.duration_in_frames) == (1280, 720, 25, 90)
    page.wait_for_function.assert_awaited_once_with("window.__ready === true", timeout=5000)


def test_load_timeout_raises_scene_load_timeout():
    page = make_page()
    page.wait_for_function = AsyncMock(side_effect=PlaywrightTimeoutError("Timeout 50ms exceeded"))
    driver, _ = make_driver(page)

    with pytest.raises(SceneLoadTimeout):
        asyncio.run(driver.load("http://localhost:5173/", 50))


def test_collect_audio_tracks_skips_muted_and_sourceless():
    raw = [
        {"src": "music.mp3", "startFrame": 0, "volume": 0.5, "playbackRate": 1, "loop": True, "muted": False},
        {"src": "voice.mp3", "startFrame": 10, "volume": 1, "muted": True},
        {"src": None, "startFrame": 0, "volume": 1, "muted": False},
    ]
    driver, _ = make_driver(make_page(evaluate_result=raw))

    tracks = asyncio.run(driver.collect_audio_tracks())

    assert len(tracks) == 1
    assert tracks[0].source_url == "music.mp3"
    assert tracks[0].loop is True
    assert tracks[0].volume == 0.5


def test_dispose_is_idempotent():
    browser = Mock()
    browser.close = AsyncMock()
    playwright = Mock()
    playwright.stop = AsyncMock()

    async def scenario():
        driver, _ = make_driver(browser=browser, playwright=playwright)
        await driver.dispose()
        await driver.dispose()
        with pytest.raises(RenderError):
            await driver.commit_frame(0)

    asyncio.run(scenario())
    browser.close.assert_awaited_once()
    playwright.stop.assert_awaited_once()


def test_build_scene_url_encodes_props():
    url = build_scene_url("http://localhost:5173", "intro", {"name": "Ada"}, width=1920, fps=30)
    query = parse_qs(urlparse(url).query)

    assert query["renderMode"] == ["true"]
    assert query["composition"] == ["intro"]
    assert json.loads(query["props"][0]) == {"name": "Ada"}
    assert query["width"] == ["1920"]
    assert "height" not in query


def test_build_scene_url_appends_to_existing_query():
    url = build_scene_url("http://localhost:5173/?theme=dark", "intro")
    assert url.startswith("http://localhost:5173/?theme=dark&renderMode=true")


@pytest.mark.parametrize("url", ["ftp://localhost/scene", "file:///tmp/index.html", "localhost:5173"])
def test_frontend_url_must_be_http(url):
    with pytest.raises(RenderValidationError):
        validate_frontend_url(url)


def test_remote_frontend_needs_opt_in():
    with pytest.raises(RenderValidationError):
        validate_frontend_url("https://example.com/", allow_remote=False)
    assert validate_frontend_url("https://example.com/", allow_remote=True) == "https://example.com/"
    assert validate_frontend_url("http://127.0.0.1:3000/", allow_remote=False)
