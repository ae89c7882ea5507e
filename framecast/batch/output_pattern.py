"""
Output filename patterns for batch renders.

    "{name}-welcome.mp4"        field from the row
    "{compositionId}-{_index}"  composition id, zero-padded row index

Unknown placeholders are left as written. The extension is forced to match
the codec.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Sequence

from framecast.errors import RenderValidationError

_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")
_UNSAFE = re.compile(r'[/\\:*?"<>|]')
_WHITESPACE = re.compile(r"\s+")


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def sanitize_filename(value: Any) -> str:
    """Replace path separators, reserved characters and whitespace with '-'."""
    return _WHITESPACE.sub("-", _UNSAFE.sub("-", _stringify(value)))


def resolve_output_pattern(
    pattern: str,
    row: Dict[str, Any],
    index: int,
    total_rows: int,
    composition_id: str,
    extension: str,
) -> str:
    padding = max(len(str(max(total_rows - 1, 0))), 3)

    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key == "_index":
            return str(index).zfill(padding)
        if key == "compositionId":
            return sanitize_filename(composition_id)
        if key in row:
            return sanitize_filename(row[key])
        return match.group(0)

    filename = _PLACEHOLDER.sub(replace, pattern)
    if not filename.endswith(f".{extension}"):
        filename = re.sub(r"\.[^./\\]+$", "", filename) + f".{extension}"
    return filename


def resolve_output_filenames(
    pattern: str,
    rows: Sequence[Dict[str, Any]],
    composition_id: str,
    extension: str,
) -> List[str]:
    """
    Resolve every row's filename up front.

    Raises:
        RenderValidationError: two rows resolve to the same filename
    """
    filenames = []
    seen = set()
    for index, row in enumerate(rows):
        filename = resolve_output_pattern(pattern, row, index, len(rows), composition_id, extension)
        if filename in seen:
            raise RenderValidationError(
                f'Duplicate output filename "{filename}" (row {index}). '
                f"Use {{_index}} in your pattern to ensure uniqueness."
            )
        seen.add(filename)
        filenames.append(filename)
    return filenames
