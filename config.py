"""
Configuration settings for framecast.
Contains paths, renderer/encoder defaults and server settings.

Every value can be overridden through the environment or a .env file
placed next to this module (loaded with python-dotenv).
"""

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("true", "1", "yes")


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


# ------------------------------------------------------------
# File paths (directories, not individual files)
# ------------------------------------------------------------
OUTPUT_DIR = os.getenv("OUTPUT_DIR", "data/output")
LOG_DIR = os.getenv("LOG_DIR", "data/logs")
TEMP_DIR_PREFIX = ".framecast-"  # temp dirs are created next to the output file

# ------------------------------------------------------------
# Scene / frontend
# ------------------------------------------------------------
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
ALLOW_REMOTE_FRONTEND = _env_bool("ALLOW_REMOTE_FRONTEND", False)
RENDER_CONTAINER_SELECTOR = os.getenv("RENDER_CONTAINER_SELECTOR", "#render-container")

# ------------------------------------------------------------
# Browser (Playwright / Chromium)
# ------------------------------------------------------------
BROWSER_HEADLESS = _env_bool("BROWSER_HEADLESS", True)
BROWSER_EXECUTABLE = os.getenv("BROWSER_EXECUTABLE") or None
# Rendering only loads trusted local content, so sandboxing and site isolation are off.
# Background throttling is disabled to keep frame timing consistent.
BROWSER_ARGS = os.getenv(
    "BROWSER_ARGS",
    " ".join([
        "--disable-web-security",
        "--disable-features=IsolateOrigins",
        "--disable-site-isolation-trials",
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-gpu",
        "--disable-dev-shm-usage",
        "--disable-background-timer-throttling",
        "--disable-backgrounding-occluded-windows",
        "--disable-renderer-backgrounding",
        "--disable-ipc-flooding-protection",
        "--autoplay-policy=no-user-gesture-required",
    ]),
).split()

# ------------------------------------------------------------
# Readiness / frame timing (milliseconds)
# ------------------------------------------------------------
SCENE_LOAD_TIMEOUT_MS = _env_int("SCENE_LOAD_TIMEOUT_MS", 30000)
READINESS_TIMEOUT_MS = _env_int("READINESS_TIMEOUT_MS", 30000)
DELAY_DEFAULT_TIMEOUT_MS = _env_int("DELAY_DEFAULT_TIMEOUT_MS", 30000)
FRAME_SETTLE_MS = _env_int("FRAME_SETTLE_MS", 16)  # small settle after paint for complex scenes

# ------------------------------------------------------------
# Video settings
# ------------------------------------------------------------
DEFAULT_WIDTH = _env_int("DEFAULT_WIDTH", 1920)
DEFAULT_HEIGHT = _env_int("DEFAULT_HEIGHT", 1080)
DEFAULT_FPS = _env_int("DEFAULT_FPS", 30)
DEFAULT_DURATION_IN_FRAMES = _env_int("DEFAULT_DURATION_IN_FRAMES", 300)
DEFAULT_CODEC = os.getenv("DEFAULT_CODEC", "h264")
PRESET = os.getenv("PRESET", "fast")  # x264/x265 preset
CAPTURE_FORMAT = os.getenv("CAPTURE_FORMAT", "png")  # frame format piped into the encoder: png | jpeg
CAPTURE_QUALITY = _env_int("CAPTURE_QUALITY", 90)  # only used when CAPTURE_FORMAT is jpeg
GIF_LOOP = _env_int("GIF_LOOP", 0)  # 0 = loop forever
FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "ffmpeg")

# ------------------------------------------------------------
# Parallelism
# ------------------------------------------------------------
# Each frame worker owns one Chromium instance and one ffmpeg process.
# Batch jobs multiply this: M batch lanes x K workers renderer instances at peak.
MAX_WORKERS = _env_int("MAX_WORKERS", 8)
DEFAULT_CONCURRENCY = _env_int("DEFAULT_CONCURRENCY", 1)
DEFAULT_BATCH_CONCURRENCY = _env_int("DEFAULT_BATCH_CONCURRENCY", 2)

# ------------------------------------------------------------
# Audio
# ------------------------------------------------------------
AUDIO_CODEC = os.getenv("AUDIO_CODEC", "aac")
AUDIO_BITRATE = os.getenv("AUDIO_BITRATE", "320k")
AUDIO_SAMPLE_RATE = _env_int("AUDIO_SAMPLE_RATE", 48000)
AUDIO_DOWNLOAD_TIMEOUT = _env_int("AUDIO_DOWNLOAD_TIMEOUT", 30)  # seconds

# ------------------------------------------------------------
# Render server
# ------------------------------------------------------------
SERVER_HOST = os.getenv("SERVER_HOST", "127.0.0.1")
SERVER_PORT = _env_int("SERVER_PORT", 4000)

# ------------------------------------------------------------
# Logging
# ------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
