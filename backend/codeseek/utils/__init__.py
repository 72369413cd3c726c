"""Utility functions for codeseek."""

from .file_utils import (
    atomic_write_json,
    dir_size,
    ensure_dir,
    text_sha256,
)

__all__ = [
    "atomic_write_json",
    "dir_size",
    "ensure_dir",
    "text_sha256",
]
