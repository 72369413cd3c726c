"""Exceptions for codeseek operations."""

from __future__ import annotations

from typing import Optional


class CodeSeekError(Exception):
    """Base exception for codeseek operations."""
    pass


class ValidationError(CodeSeekError):
    """Exception for rejected input such as an empty search query."""
    pass


class ModelUnavailable(CodeSeekError):
    """Exception for an embedding model that cannot be fetched or loaded."""
    pass


class StoreUnavailable(CodeSeekError):
    """Exception for a vector store that cannot be opened."""
    pass


class FileSkipped(CodeSeekError):
    """Exception for a file excluded from the index (binary, oversized, unreadable)."""

    def __init__(self, file_path: str, reason: str):
        super().__init__(f"{file_path}: {reason}")
        self.file_path = file_path
        self.reason = reason


class WriteFailure(CodeSeekError):
    """Exception for a store write that did not complete.

    The previous state of the affected file is left in place.
    """

    def __init__(self, message: str, file_path: Optional[str] = None):
        super().__init__(message)
        self.file_path = file_path


class SearchFailure(CodeSeekError):
    """Exception for a vector query the store could not answer."""
    pass


class WorkerError(CodeSeekError):
    """Base exception for worker process failures."""
    pass


class WorkerTimeout(WorkerError):
    """Exception for a worker that did not answer within the unit timeout."""
    pass


class WorkerCrash(WorkerError):
    """Exception for a worker process that exited unexpectedly."""
    pass
