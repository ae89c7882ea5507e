"""
Helper functions for framecast.
Contains filesystem utilities used across different modules.
"""

import json
import os
import shutil
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from config import LOG_DIR, OUTPUT_DIR, TEMP_DIR_PREFIX
from utils.logger import setup_logger

logger = setup_logger(__name__)


def ensure_directory(path: str) -> None:
    """
    Ensure a directory exists, create if it doesn't.

    Args:
        path (str): Path to the directory
    """
    os.makedirs(path, exist_ok=True)


def initialize_required_directories() -> None:
    """
    Initialize all required directories for the application.
    Should be called at startup. Creates: data/output, data/logs
    """
    for directory in (OUTPUT_DIR, LOG_DIR):
        ensure_directory(directory)
        logger.debug(f"Ensured directory exists: {directory}")


def load_json(file_path: str) -> Any:
    """
    Load and parse a JSON file.

    Args:
        file_path (str): Path to the JSON file

    Returns:
        Parsed JSON content
    """
    with open(file_path, "r", encoding="utf-8") as f:
        return json.load(f)


def create_temp_dir(parent: str) -> Path:
    """
    Create a private working directory next to an output file.

    Intermediate files (segments, palettes, downloaded audio) live here so
    they land on the same filesystem as the final output and can be moved
    into place without copying.

    Args:
        parent (str): Directory that will receive the final output

    Returns:
        Path: The new directory, e.g. data/output/.framecast-1718000000-3f2a9c
    """
    name = f"{TEMP_DIR_PREFIX}{int(time.time())}-{uuid.uuid4().hex[:6]}"
    path = Path(parent) / name
    path.mkdir(parents=True, exist_ok=False)
    return path


def cleanup_temp_dir(path: Optional[Path]) -> None:
    """Remove a working directory created by create_temp_dir()."""
    if path is None or not Path(path).exists():
        return
    shutil.rmtree(path, ignore_errors=True)
    logger.debug(f"Removed temp dir: {path}")


def default_output_path(composition_id: str, extension: str = "", output_dir: str = OUTPUT_DIR) -> str:
    """
    Timestamped output path for a composition.

    Args:
        composition_id (str): Composition being rendered
        extension (str): File extension without dot; empty for a directory

    Returns:
        str: e.g. data/output/intro-1718000000000.mp4
    """
    stamp = int(time.time() * 1000)
    name = f"{composition_id}-{stamp}"
    if extension:
        name = f"{name}.{extension}"
    return os.path.join(output_dir, name)


def file_summary(path: str) -> Dict[str, Any]:
    """Size information for logging."""
    size = os.path.getsize(path) if os.path.isfile(path) else 0
    return {"path": path, "size_mb": round(size / (1024 * 1024), 2)}
