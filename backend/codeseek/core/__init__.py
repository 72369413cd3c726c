"""Core functionality for codeseek."""

from .models import (
    Chunk,
    Embedding,
    FileEvent,
    FileRecord,
    IndexProgress,
    IndexResult,
    IndexStats,
    IndexSummary,
    PreparedFile,
    SearchResult,
)
from .chunking import Chunker, chunk_text, detect_language
from .embeddings import Embedder, HashingEmbedder, SentenceTransformersEmbedder, make_embedder

__all__ = [
    "Chunk",
    "Embedding",
    "FileEvent",
    "FileRecord",
    "IndexProgress",
    "IndexResult",
    "IndexStats",
    "IndexSummary",
    "PreparedFile",
    "SearchResult",
    "Chunker",
    "chunk_text",
    "detect_language",
    "Embedder",
    "HashingEmbedder",
    "SentenceTransformersEmbedder",
    "make_embedder",
]
