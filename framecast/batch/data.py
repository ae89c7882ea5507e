"""
Batch data files: one record per output video.

.csv  header row plus data rows; quoted fields may contain commas, escaped
      quotes and newlines. "true"/"false" become booleans and plain numbers
      become int/float, except values with a leading zero ("007", "0123")
      which stay strings.
.json a top-level array of objects, or a single object (one row)
"""
from __future__ import annotations

import csv
import io
import json
import re
from pathlib import Path
from typing import Any, Dict, List

from framecast.errors import RenderValidationError

_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")


def auto_convert(value: str) -> Any:
    if value == "true":
        return True
    if value == "false":
        return False
    if not _NUMBER.match(value):
        return value
    digits = value.lstrip("-")
    if len(digits) > 1 and digits[0] == "0" and digits[1] != ".":
        return value
    return float(value) if "." in value else int(value)


def parse_csv(content: str) -> List[Dict[str, Any]]:
    reader = csv.reader(io.StringIO(content), skipinitialspace=True)
    rows = [row for row in reader if any(cell.strip() for cell in row)]
    if len(rows) < 2:
        raise RenderValidationError("CSV must have a header row and at least one data row")

    headers = [h.strip() for h in rows[0]]
    records = []
    for row in rows[1:]:
        record = {}
        for i, key in enumerate(headers):
            cell = row[i].strip() if i < len(row) else ""
            record[key] = auto_convert(cell)
        records.append(record)
    return records


def parse_json(content: str, file_path: str = "<data>") -> List[Dict[str, Any]]:
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise RenderValidationError(f"Invalid JSON in data file {file_path}: {exc}") from exc

    if isinstance(parsed, dict):
        return [parsed]
    if not isinstance(parsed, list):
        raise RenderValidationError(
            f"JSON data file must contain an array of objects, got {type(parsed).__name__}"
        )
    for i, item in enumerate(parsed):
        if not isinstance(item, dict):
            raise RenderValidationError(
                f"Each item in JSON data must be an object (row {i} is {type(item).__name__})"
            )
    return parsed


def load_data_file(file_path: str) -> List[Dict[str, Any]]:
    """Load batch rows from a .csv or .json file."""
    path = Path(file_path)
    if not path.is_file():
        raise RenderValidationError(f"Data file not found: {file_path}")

    content = path.read_text(encoding="utf-8").strip()
    if not content:
        raise RenderValidationError(f"Data file is empty: {file_path}")

    ext = path.suffix.lower()
    if ext == ".csv":
        rows = parse_csv(content)
    elif ext == ".json":
        rows = parse_json(content, file_path)
    else:
        raise RenderValidationError(f'Unsupported data file format "{ext}". Use .csv or .json')

    if not rows:
        raise RenderValidationError(f"Data file contains no rows: {file_path}")
    return rows
