"""Vector storage backends (embedded Qdrant only)."""

from .base import SearchFilters, VectorStore
from .factory import create_vector_store, open_index
from .manifest import Manifest, read_manifest, write_manifest
from .qdrant import QdrantVectorStore

__all__ = [
    "SearchFilters",
    "VectorStore",
    "QdrantVectorStore",
    "Manifest",
    "create_vector_store",
    "open_index",
    "read_manifest",
    "write_manifest",
]
