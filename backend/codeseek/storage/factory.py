"""Factory for creating vector store instances (Qdrant only)."""

from __future__ import annotations

from pathlib import Path
from typing import Dict

from ..config.manager import CHUNKING_KEYS, cfg_fingerprint, index_dir
from .base import VectorStore
from .qdrant import QdrantVectorStore


def create_vector_store(cfg: Dict, repo_path: Path) -> VectorStore:
    """Build the (unopened) store of the project at `repo_path`."""
    return open_index(index_dir(repo_path, cfg), cfg)


def open_index(index_path: Path, cfg: Dict) -> QdrantVectorStore:
    """Build the (unopened) store for an index directory."""
    return QdrantVectorStore(
        index_path=Path(index_path),
        chunking_fingerprint=cfg_fingerprint(cfg, CHUNKING_KEYS),
    )
