"""Semantic search functionality."""

from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import Executor
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.embeddings import Embedder
from ..core.models import Chunk, SearchResult
from ..core.tokens import extract_keywords
from ..exceptions import ValidationError
from ..storage.base import SearchFilters, VectorStore
from ..workers.pool import WorkerPool

logger = logging.getLogger(__name__)


def keyword_boost(keywords: List[str], chunk: Chunk) -> float:
    """Fraction of query keywords found in the chunk text, path or function name."""
    if not keywords:
        return 0.0
    haystack = "\n".join((chunk.text, chunk.file_path, chunk.function_name or "")).lower()
    return sum(1 for kw in keywords if kw in haystack) / len(keywords)


def highlight(text: str, keywords: List[str], context_lines: int = 2) -> Optional[str]:
    """Lines around the line with the most keyword hits, or None if nothing matches."""
    if not keywords:
        return None
    lines = text.splitlines()
    best, best_hits = -1, 0
    for i, line in enumerate(lines):
        lowered = line.lower()
        hits = sum(1 for kw in keywords if kw in lowered)
        if hits > best_hits:
            best, best_hits = i, hits
    if best < 0:
        return None
    start = max(0, best - context_lines)
    return "\n".join(lines[start:best + context_lines + 1])


class Searcher:
    """Hybrid search over one project's store.

    Candidates come from vector similarity; a keyword boost then reorders
    them with `final = semantic_weight * similarity + keyword_weight * boost`.
    """

    def __init__(
        self,
        store: VectorStore,
        embedder: Embedder,
        cfg: Dict,
        executor: Optional[Executor] = None,
        pool: Optional[WorkerPool] = None,
    ):
        search_cfg = cfg.get("search", {})
        self.store = store
        self.embedder = embedder
        self.executor = executor
        self.pool = pool
        self.default_limit = int(search_cfg.get("limit", 10))
        self.oversample = max(1, int(search_cfg.get("oversample", 3)))
        self.semantic_weight = float(search_cfg.get("semantic_weight", 0.85))
        self.keyword_weight = float(search_cfg.get("keyword_weight", 0.15))
        self.min_similarity = search_cfg.get("min_similarity")

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(fn, *args, **kwargs))

    def _validate(self, query: str, limit: Optional[int]) -> int:
        if query is None or not str(query).strip():
            raise ValidationError("Search query must not be empty")
        limit = self.default_limit if limit is None else int(limit)
        if limit <= 0:
            raise ValidationError("Search limit must be positive")
        return limit

    def rerank(
        self,
        query: str,
        hits: Sequence[Tuple[Chunk, float]],
        limit: int,
        return_context: bool = False,
        shard_of: Optional[Dict[int, str]] = None,
    ) -> List[SearchResult]:
        """Combine similarity with keyword boost, order and truncate."""
        keywords = extract_keywords(query)
        scored = []
        for i, (chunk, similarity) in enumerate(hits):
            boost = keyword_boost(keywords, chunk)
            final = self.semantic_weight * similarity + self.keyword_weight * boost
            scored.append((final, boost, similarity, chunk, i))

        scored.sort(key=lambda s: (-s[0], len(s[3].file_path), s[3].file_path, s[3].chunk_index))

        results = []
        for final, boost, similarity, chunk, i in scored[:limit]:
            metadata = {
                "start_line": chunk.start_line,
                "end_line": chunk.end_line,
                "language": chunk.language,
                "function_name": chunk.function_name,
                "score": round(final, 6),
                "keyword_boost": round(boost, 6),
            }
            if shard_of is not None:
                metadata["index"] = shard_of[i]
            results.append(
                SearchResult(
                    file_path=chunk.file_path,
                    chunk_index=chunk.chunk_index,
                    content=chunk.text,
                    similarity=float(similarity),
                    metadata=metadata,
                    highlight=highlight(chunk.text, keywords) if return_context else None,
                )
            )
        return results

    async def search(
        self,
        query: str,
        limit: Optional[int] = None,
        min_similarity: Optional[float] = None,
        filters: Optional[SearchFilters] = None,
        return_context: bool = False,
    ) -> List[SearchResult]:
        """Search the project index.

        Args:
            query: Natural-language or identifier query
            limit: Maximum number of results
            min_similarity: Drop candidates whose raw similarity is lower
            filters: Restrict to extensions and/or languages
            return_context: Attach a highlight snippet to each result

        Returns:
            Results ordered best first; empty for an empty index

        Raises:
            ValidationError: If the query is empty
        """
        limit = self._validate(query, limit)
        if min_similarity is None:
            min_similarity = self.min_similarity

        query_vector = await self._run(self.embedder.embed_query, query)
        hits = await self._run(
            self.store.search, query_vector, limit * self.oversample, filters, min_similarity
        )
        results = self.rerank(query, hits, limit, return_context=return_context)
        logger.debug(f"Query {query!r}: {len(hits)} candidates, {len(results)} results")
        return results

    async def search_shards(
        self,
        shards: Sequence[Path],
        query: str,
        limit: Optional[int] = None,
        min_similarity: Optional[float] = None,
        filters: Optional[SearchFilters] = None,
        return_context: bool = False,
    ) -> List[SearchResult]:
        """Search several index directories at once and rerank the merged hits.

        The index this searcher already has open is searched in place; the
        others go through the worker pool. Each result's metadata names the
        index it came from.
        """
        limit = self._validate(query, limit)
        if min_similarity is None:
            min_similarity = self.min_similarity
        k = limit * self.oversample
        query_vector = await self._run(self.embedder.embed_query, query)

        own = getattr(self.store, "index_path", None)
        own = Path(own).resolve() if own is not None else None
        others = [Path(s).resolve() for s in shards]
        merged: List[Tuple[Chunk, float, str]] = []
        if own is not None and own in others:
            others = [s for s in others if s != own]
            local = await self._run(self.store.search, query_vector, k, filters, min_similarity)
            merged.extend((chunk, score, str(own)) for chunk, score in local)

        if others:
            pool = self.pool or WorkerPool({}, embedder=self.embedder, executor=self.executor)
            try:
                merged.extend(
                    await pool.run_parallel_search(others, query_vector, k, filters, min_similarity)
                )
            finally:
                if self.pool is None:
                    pool.close()

        merged.sort(key=lambda h: -h[1])
        merged = merged[:k]
        return self.rerank(
            query,
            [(chunk, score) for chunk, score, _ in merged],
            limit,
            return_context=return_context,
            shard_of={i: shard for i, (_, _, shard) in enumerate(merged)},
        )
