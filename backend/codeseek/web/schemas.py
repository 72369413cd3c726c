from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Literal


class InitializeRequest(BaseModel):
    project_path: str


class InitializeResponse(BaseModel):
    ready: bool
    error: Optional[str] = None
    warnings: List[str] = []


class IndexStatsResponse(BaseModel):
    total_files: int
    total_chunks: int
    total_embeddings: int
    database_size: int
    last_indexed_at: Optional[datetime] = None


class StatusResponse(BaseModel):
    ready: bool
    indexing: bool
    stats: Optional[IndexStatsResponse] = None
    project_path: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = []


class OperationResponse(BaseModel):
    success: bool
    error: Optional[str] = None


class FileEventRequest(BaseModel):
    event_type: Literal["add", "change", "unlink", "addDir", "unlinkDir"]
    path: str
    content: Optional[str] = None


class FileEventResponse(OperationResponse):
    chunks_indexed: Optional[int] = None
    chunks_removed: Optional[int] = None
    files_removed: Optional[int] = None


class SearchRequest(BaseModel):
    query: str
    limit: int = Field(default=10, ge=1, le=200)
    min_similarity: Optional[float] = None
    extensions: List[str] = []
    languages: List[str] = []
    return_context: bool = False


class SearchResultMetadata(BaseModel):
    start_line: int
    end_line: int
    language: str
    function_name: Optional[str] = None
    score: float
    keyword_boost: float


class SearchResult(BaseModel):
    file_path: str
    chunk_index: int
    content: str
    similarity: float
    metadata: SearchResultMetadata
    highlight: Optional[str] = None


class SearchResponse(BaseModel):
    success: bool
    results: List[SearchResult] = []
    error: Optional[str] = None
