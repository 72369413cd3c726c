"""Indexing functionality for codeseek."""

from .indexer import Indexer, IndexState, iter_files
from .pipeline import prepare_file, read_source

__all__ = [
    "Indexer",
    "IndexState",
    "iter_files",
    "prepare_file",
    "read_source",
]
