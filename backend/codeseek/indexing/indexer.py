"""Code indexing logic."""

from __future__ import annotations

import asyncio
import enum
import fnmatch
import functools
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from ..config import DEFAULT_EXCLUDE_PATTERNS, DEFAULT_INCLUDE_PATTERNS, expand_patterns
from ..core.chunking import Chunker
from ..core.embeddings import Embedder
from ..core.models import FileRecord, IndexProgress, IndexSummary, PreparedFile
from ..exceptions import FileSkipped, ModelUnavailable, ValidationError, WriteFailure
from ..storage.base import VectorStore
from ..workers.pool import WorkerPool
from .pipeline import prepare_file

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[IndexProgress], None]


class IndexState(str, enum.Enum):
    IDLE = "idle"
    INDEXING = "indexing"
    READY = "ready"
    ERROR = "error"


def _match_any(path: str, globs: List[str]) -> bool:
    return any(fnmatch.fnmatch(path, g) for g in globs)


def iter_files(
    repo: Path,
    cfg: Dict,
    start: Optional[Path] = None,
    include_hidden: bool = False,
    exclude_globs: Optional[List[str]] = None,
) -> Iterable[Path]:
    """Yield indexable files under `start` (default: `repo`), sorted per directory.

    Excluded and (unless `include_hidden`) dot-prefixed directories are not
    descended into.
    """
    include_globs = cfg.get("include_globs", expand_patterns(DEFAULT_INCLUDE_PATTERNS))
    excludes = list(cfg.get("exclude_globs", expand_patterns(DEFAULT_EXCLUDE_PATTERNS)))
    if exclude_globs:
        excludes += expand_patterns(exclude_globs)

    repo = Path(repo)
    for root, dirs, files in os.walk(start or repo):
        rel_root = Path(root).relative_to(repo).as_posix()
        rel_root = "" if rel_root == "." else rel_root + "/"

        kept = []
        for d in sorted(dirs):
            if not include_hidden and d.startswith("."):
                continue
            if _match_any(rel_root + d + "/", excludes):
                continue
            kept.append(d)
        dirs[:] = kept

        for fname in sorted(files):
            if not include_hidden and fname.startswith("."):
                continue
            rel = rel_root + fname
            if _match_any(rel, excludes):
                continue
            if not _match_any(rel, include_globs):
                continue
            p = Path(root) / fname
            if not p.is_file():
                continue
            yield p


class Indexer:
    """Keeps the store of one project in step with its files.

    Runs on the asyncio loop; store and embedder calls go through a single
    worker thread so only one writer ever touches the store.
    """

    def __init__(
        self,
        root: Path,
        store: VectorStore,
        embedder: Embedder,
        cfg: Dict,
        executor: Optional[ThreadPoolExecutor] = None,
        pool: Optional[WorkerPool] = None,
    ):
        self.root = Path(root).resolve()
        self.store = store
        self.embedder = embedder
        self.cfg = cfg
        self.chunker = Chunker.from_config(cfg)
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="codeseek-store")
        self._owns_pool = pool is None
        self.pool = pool or WorkerPool(cfg, embedder=embedder, executor=self.executor)
        self.state = IndexState.IDLE
        self.last_error: Optional[str] = None
        self._active = 0
        self._build_task: Optional[asyncio.Task] = None

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(fn, *args, **kwargs))

    def _enter(self) -> None:
        if self.state is IndexState.ERROR:
            raise ModelUnavailable(self.last_error or "Indexer is in error state")
        self._active += 1
        self.state = IndexState.INDEXING

    def _leave(self) -> None:
        self._active -= 1
        if self.state is IndexState.INDEXING and self._active == 0:
            self.state = IndexState.READY

    def _fail(self, error: Exception) -> None:
        self.state = IndexState.ERROR
        self.last_error = str(error)
        logger.error(f"Indexing stopped: {error}")

    @property
    def is_building(self) -> bool:
        return self._build_task is not None and not self._build_task.done()

    def relpath(self, file_path) -> str:
        """Normalized project-relative POSIX path of `file_path`.

        `..` segments and symlinks are resolved first, so two spellings of
        the same file map to one key.

        Raises:
            ValidationError: If the path resolves outside the project root
        """
        p = Path(file_path)
        if not p.is_absolute():
            p = self.root / p
        try:
            return p.resolve().relative_to(self.root).as_posix()
        except ValueError:
            raise ValidationError(f"{file_path} is outside {self.root}")

    async def _commit(self, prepared: PreparedFile) -> int:
        """Write one prepared file to the store. Returns chunks written."""
        if prepared.unchanged:
            return 0
        if not prepared.chunks:
            removed = await self._run(self.store.delete_file, prepared.file_path)
            if removed:
                logger.info(f"{prepared.file_path} is now empty; removed {removed} chunks")
            return 0
        record = FileRecord(
            file_path=prepared.file_path,
            content_hash=prepared.content_hash,
            mtime=prepared.mtime,
            chunk_ids=[c.chunk_id for c in prepared.chunks],
            last_indexed_at=datetime.now(timezone.utc),
            language=prepared.language,
        )
        await self._run(self.store.upsert_file, record, prepared.chunks, prepared.vectors)
        return len(prepared.chunks)

    async def index_file(self, file_path, content: Optional[str] = None) -> int:
        """Index (or re-index) one file.

        Args:
            file_path: Absolute or project-relative path
            content: Current text, if the caller already has it

        Returns:
            Number of chunks written; 0 when unchanged or skipped

        Raises:
            ModelUnavailable: If the embedding model cannot be loaded
            WriteFailure: If the store write failed (old chunks stay searchable)
        """
        rel = self.relpath(file_path)
        self._enter()
        try:
            record = await self._run(self.store.get_file_record, rel)
            try:
                prepared = await self._run(
                    prepare_file,
                    self.root,
                    rel,
                    self.chunker,
                    self.embedder,
                    record.content_hash if record else None,
                    content,
                )
            except FileSkipped as e:
                logger.info(f"Skipped {e.file_path}: {e.reason}")
                return 0
            written = await self._commit(prepared)
            if written:
                logger.debug(f"Indexed {rel}: {written} chunks")
            return written
        except ModelUnavailable as e:
            self._fail(e)
            raise
        finally:
            self._leave()

    async def remove_file(self, file_path) -> int:
        """Drop one file from the index. Returns the number of chunks removed."""
        rel = self.relpath(file_path)
        removed = await self._run(self.store.delete_file, rel)
        if removed:
            logger.info(f"Removed {rel} ({removed} chunks)")
        return removed

    async def remove_directory(self, dir_path) -> int:
        """Drop every file under a directory. Returns the number of files removed."""
        rel = self.relpath(dir_path).rstrip("/")
        prefix = "" if rel in ("", ".") else rel + "/"
        known = await self._run(self.store.known_hashes)
        doomed = [p for p in known if p.startswith(prefix)]
        for p in doomed:
            await self._run(self.store.delete_file, p)
        if doomed:
            logger.info(f"Removed {len(doomed)} files under {rel or '.'}")
        return len(doomed)

    async def index_directory(
        self,
        root=None,
        include_hidden: bool = False,
        exclude_globs: Optional[List[str]] = None,
        cancel_event=None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> IndexSummary:
        """Bring every file under `root` (default: the project root) up to date.

        A full build requested while another one runs joins it instead of
        starting a second one.
        """
        target = self.root if root is None else (self.root / self.relpath(root)).resolve()
        if target != self.root:
            return await self._index_tree(target, include_hidden, exclude_globs, cancel_event, on_progress)

        if not self.is_building:
            self._build_task = asyncio.ensure_future(
                self._index_tree(target, include_hidden, exclude_globs, cancel_event, on_progress)
            )
        else:
            logger.info("Full build already running; joining it")
        return await asyncio.shield(self._build_task)

    async def _index_tree(
        self,
        target: Path,
        include_hidden: bool,
        exclude_globs: Optional[List[str]],
        cancel_event,
        on_progress: Optional[ProgressCallback],
    ) -> IndexSummary:
        self._enter()
        started = time.monotonic()
        summary = IndexSummary()
        removal_errors: Dict[str, str] = {}
        try:
            paths = await self._run(
                lambda: list(iter_files(self.root, self.cfg, target, include_hidden, exclude_globs))
            )
            files = [p.relative_to(self.root).as_posix() for p in paths]
            summary.files_total = len(files)
            logger.info(f"Indexing {len(files)} files under {target}")
            if on_progress is not None:
                on_progress(IndexProgress(0, len(files)))

            known = await self._run(self.store.known_hashes)
            prefix = "" if target == self.root else target.relative_to(self.root).as_posix() + "/"
            present = set(files)
            for gone in [p for p in known if p.startswith(prefix) and p not in present]:
                try:
                    await self._run(self.store.delete_file, gone)
                except WriteFailure as e:
                    logger.warning(f"Could not drop vanished file {gone}: {e}")
                    removal_errors[gone] = str(e)
                    continue
                summary.files_removed += 1

            async def on_result(prepared: PreparedFile) -> None:
                if prepared.unchanged:
                    summary.files_unchanged += 1
                    return
                summary.chunks_indexed += await self._commit(prepared)

            result = await self.pool.run_parallel_index(
                self.root,
                files,
                known_hashes=known,
                on_progress=on_progress,
                on_result=on_result,
                cancel_event=cancel_event,
            )
        except ModelUnavailable as e:
            self._fail(e)
            raise
        finally:
            self._leave()

        summary.files_succeeded = len(result.succeeded)
        summary.files_skipped = len(result.skipped)
        summary.files_failed = len(result.failed)
        summary.errors = dict(result.errors)
        summary.errors.update(removal_errors)
        summary.cancelled = result.cancelled
        summary.elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Indexed {summary.chunks_indexed} chunks from {summary.files_succeeded} files "
            f"({summary.files_unchanged} unchanged, {summary.files_failed} failed, "
            f"{summary.files_removed} removed) in {summary.elapsed_ms} ms"
            + (" [cancelled]" if summary.cancelled else "")
        )
        return summary

    def close(self) -> None:
        if self._owns_pool:
            self.pool.close()
        if self._owns_executor:
            self.executor.shutdown(wait=True)
