"""Data models for codeseek."""

from __future__ import annotations

import dataclasses
import datetime as _dt
from typing import Dict, List, Optional


@dataclasses.dataclass(frozen=True)
class Chunk:
    """A bounded, line-aligned span of one file's text."""

    chunk_id: str
    file_path: str
    chunk_index: int
    start_line: int
    end_line: int
    language: str
    content_hash: str
    text: str
    function_name: Optional[str] = None

    def to_payload(self) -> Dict:
        return dataclasses.asdict(self)

    @classmethod
    def from_payload(cls, payload: Dict) -> "Chunk":
        return cls(
            chunk_id=payload["chunk_id"],
            file_path=payload["file_path"],
            chunk_index=int(payload["chunk_index"]),
            start_line=int(payload["start_line"]),
            end_line=int(payload["end_line"]),
            language=payload.get("language", "unknown"),
            content_hash=payload.get("content_hash", ""),
            text=payload.get("text", ""),
            function_name=payload.get("function_name"),
        )


@dataclasses.dataclass
class Embedding:
    chunk_id: str
    vector: List[float]
    model_version: str


@dataclasses.dataclass
class FileRecord:
    """What the index knows about one file."""

    file_path: str
    content_hash: str
    mtime: float
    chunk_ids: List[str]
    last_indexed_at: _dt.datetime
    language: str = "unknown"


@dataclasses.dataclass
class IndexStats:
    total_files: int = 0
    total_chunks: int = 0
    total_embeddings: int = 0
    database_size: int = 0
    last_indexed_at: Optional[_dt.datetime] = None

    def to_dict(self) -> Dict:
        data = dataclasses.asdict(self)
        data["last_indexed_at"] = self.last_indexed_at.isoformat() if self.last_indexed_at else None
        return data


@dataclasses.dataclass
class SearchResult:
    file_path: str
    chunk_index: int
    content: str
    similarity: float
    metadata: Dict
    highlight: Optional[str] = None

    def to_dict(self) -> Dict:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class PreparedFile:
    """Chunks and vectors computed for one file, ready for the store.

    `unchanged` is set when the content hash matched the stored record and
    nothing was chunked or embedded.
    """

    file_path: str
    content_hash: str
    mtime: float
    language: str = "unknown"
    chunks: List[Chunk] = dataclasses.field(default_factory=list)
    vectors: List[List[float]] = dataclasses.field(default_factory=list)
    unchanged: bool = False


@dataclasses.dataclass
class IndexProgress:
    files_processed: int
    total_files: int
    file_path: Optional[str] = None
    worker_id: Optional[int] = None


@dataclasses.dataclass
class IndexResult:
    """Aggregate result of a parallel indexing run.

    `prepared` is only filled when the caller did not consume results as
    they arrived.
    """

    succeeded: List[str] = dataclasses.field(default_factory=list)
    failed: List[str] = dataclasses.field(default_factory=list)
    skipped: List[str] = dataclasses.field(default_factory=list)
    errors: Dict[str, str] = dataclasses.field(default_factory=dict)
    prepared: List[PreparedFile] = dataclasses.field(default_factory=list)
    cancelled: bool = False


@dataclasses.dataclass
class IndexSummary:
    chunks_indexed: int = 0
    elapsed_ms: int = 0
    files_total: int = 0
    files_succeeded: int = 0
    files_unchanged: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    files_removed: int = 0
    cancelled: bool = False
    errors: Dict[str, str] = dataclasses.field(default_factory=dict)

    def to_dict(self) -> Dict:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class FileEvent:
    """A change notification from the host's file watcher.

    `event_type` is one of add, change, unlink, addDir, unlinkDir.
    """

    event_type: str
    path: str
    content: Optional[str] = None
