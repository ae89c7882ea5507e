"""
Batch subpackage init.
Expose the scheduler, data loading, filename patterns and the batch runner.
"""
from .scheduler import BatchResult, run_all
from .data import load_data_file
from .output_pattern import resolve_output_filenames, resolve_output_pattern
from .runner import BatchSummary, render_batch

__all__ = [
    "BatchResult",
    "run_all",
    "load_data_file",
    "resolve_output_filenames",
    "resolve_output_pattern",
    "BatchSummary",
    "render_batch",
]
