"""Abstract vector storage interface."""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Tuple

from ..core.models import Chunk, FileRecord, IndexStats


@dataclasses.dataclass
class SearchFilters:
    """Restrict a search to some file extensions and/or languages."""

    extensions: List[str] = dataclasses.field(default_factory=list)
    languages: List[str] = dataclasses.field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.extensions and not self.languages


class VectorStore(ABC):
    """Abstract base class for vector storage backends.

    A store holds the chunks and vectors of one project plus a FileRecord
    per indexed file. It is driven by a single writer.
    """

    @abstractmethod
    def initialize(self, db_path: Optional[Path] = None) -> None:
        """Open or create the store. Idempotent."""
        pass

    @abstractmethod
    def bind_model(self, model_version: str, dimension: int) -> bool:
        """Tie the store to an embedding model; reset it on mismatch.

        Returns:
            True if existing data was discarded
        """
        pass

    @abstractmethod
    def upsert_file(self, record: FileRecord, chunks: List[Chunk], vectors: List[List[float]]) -> None:
        """Atomically replace the chunk set of one file."""
        pass

    @abstractmethod
    def delete_file(self, file_path: str) -> int:
        """Remove a file's record and points. Returns the number of points removed."""
        pass

    @abstractmethod
    def get_file_record(self, file_path: str) -> Optional[FileRecord]:
        pass

    @abstractmethod
    def list_file_records(self) -> List[FileRecord]:
        pass

    @abstractmethod
    def search(
        self,
        query_vector: List[float],
        k: int,
        filters: Optional[SearchFilters] = None,
        min_similarity: Optional[float] = None,
    ) -> List[Tuple[Chunk, float]]:
        """Search for the k most similar chunks, best first."""
        pass

    @abstractmethod
    def stats(self) -> IndexStats:
        pass

    @abstractmethod
    def clear(self) -> None:
        """Delete every point and FileRecord."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def known_hashes(self) -> dict:
        """Map of file_path -> content_hash (default implementation)."""
        return {r.file_path: r.content_hash for r in self.list_file_records()}

    def count(self) -> int:
        """Count stored chunks (default implementation)."""
        return self.stats().total_embeddings
