"""Utility functions for repocontext."""

from .clock import Clock, FixedClock, SystemClock, format_timestamp, parse_timestamp
from .file_utils import (
    repo_root,
    ensure_dir,
    is_binary_file,
    file_sha256,
    atomic_write_bytes,
)

__all__ = [
    "Clock",
    "FixedClock",
    "SystemClock",
    "format_timestamp",
    "parse_timestamp",
    "repo_root",
    "ensure_dir",
    "is_binary_file",
    "file_sha256",
    "atomic_write_bytes",
]
