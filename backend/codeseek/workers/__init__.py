"""Worker processes for parallel indexing and search."""

# Load the indexing package first: it imports workers.pool, which in turn
# imports indexing.pipeline, so entering via this package would be circular.
from .. import indexing as _indexing  # noqa: F401
from .pool import WorkerPool
from .worker import worker_main

__all__ = [
    "WorkerPool",
    "worker_main",
]
