"""
Logging utility for framecast.
Every module logs to the console, to the log file of its area and to all.log.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from config import LOG_DIR, LOG_LEVEL

# Logger-name prefix -> area log file. Longest prefix wins.
LOG_AREAS = {
    "__main__": "main.log",
    "main": "main.log",
    "framecast.codecs": "encoder.log",
    "framecast.renderer.encoder": "encoder.log",
    "framecast.renderer": "renderer.log",
    "framecast.reporter": "renderer.log",
    "framecast.postprocessing": "audio.log",
    "framecast.batch": "batch.log",
    "framecast.server": "server.log",
}

LOG_FORMAT = '%(asctime)s [%(name)s] %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
MAX_LOG_BYTES = 10 * 1024 * 1024  # 10MB
LOG_BACKUPS = 5

_configured_loggers = set()
_console_handlers = []


def log_file_for(name: str) -> str:
    """
    Area log file for a logger name.

    Args:
        name: The module's __name__ value

    Returns:
        Log filename (not full path), main.log when no area matches
    """
    matches = [prefix for prefix in LOG_AREAS if name == prefix or name.startswith(prefix + ".")]
    if not matches:
        return "main.log"
    return LOG_AREAS[max(matches, key=len)]


def _rotating_handler(filename: str, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        os.path.join(LOG_DIR, filename),
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUPS,
        encoding='utf-8'
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(formatter)
    return handler


def set_console_level(level) -> None:
    """Change the console threshold of every logger configured so far and later."""
    global LOG_LEVEL
    LOG_LEVEL = logging.getLevelName(level) if isinstance(level, int) else str(level)
    for handler in _console_handlers:
        handler.setLevel(_console_level())


def _console_level() -> int:
    return getattr(logging, LOG_LEVEL.upper(), logging.INFO)


def setup_logger(name: str) -> logging.Logger:
    """
    Set up a logger for a module.

    Handlers:
    1. Console (stderr, LOG_LEVEL) so stdout stays free for NDJSON events
    2. The area file, e.g. renderer.log for framecast.renderer.worker (DEBUG)
    3. The combined all.log (DEBUG)

    Files rotate at 10MB and keep 5 backups.

    Args:
        name: Name of the logger, typically __name__ of the module

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name)
    if name in _configured_loggers:
        return logger

    _configured_loggers.add(name)
    logger.setLevel(logging.DEBUG)  # handlers filter
    logger.propagate = False

    Path(LOG_DIR).mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(_console_level())
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    _console_handlers.append(console_handler)

    logger.addHandler(_rotating_handler(log_file_for(name), formatter))
    logger.addHandler(_rotating_handler("all.log", formatter))
    return logger
