"""Process pool for parallel embedding and multi-index search."""

from __future__ import annotations

import asyncio
import itertools
import logging
import multiprocessing
import queue
import time
from collections import deque
from concurrent.futures import Executor, ThreadPoolExecutor
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from ..core.chunking import Chunker
from ..core.embeddings import Embedder, make_embedder
from ..core.models import Chunk, IndexProgress, IndexResult, PreparedFile
from ..exceptions import FileSkipped, ModelUnavailable, WorkerCrash, WorkerError, WorkerTimeout, WriteFailure
from ..indexing.pipeline import prepare_file
from ..storage.base import SearchFilters
from ..storage.factory import open_index
from .worker import MSG_DONE, MSG_ERROR, MSG_FATAL, MSG_FILE, MSG_FILE_ERROR, MSG_SKIPPED, worker_main

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[IndexProgress], None]
ResultCallback = Callable[[PreparedFile], Awaitable[None]]
SearchHit = Tuple[Chunk, float, str]

POLL_INTERVAL_S = 0.1


class _Worker:
    def __init__(self, worker_id: int, process, inbox):
        self.worker_id = worker_id
        self.process = process
        self.inbox = inbox
        self.deadline = 0.0


def _search_one(cfg: Dict, index_path: str, query_vector, k, filters, min_similarity) -> List[Tuple[Chunk, float]]:
    store = open_index(Path(index_path), cfg)
    try:
        store.initialize()
        return store.search(query_vector, k, filters=filters, min_similarity=min_similarity)
    finally:
        store.close()


class WorkerPool:
    """Long-lived worker processes, each owning its own Embedder.

    Work is split into shards and assigned to workers round-robin. A worker
    that crashes or exceeds the per-unit timeout is replaced and its shard
    is reported as failed; nothing is retried. With `max_workers <= 0`, or
    when no process can be started, everything runs in this process on
    `executor` with the local embedder.
    """

    def __init__(
        self,
        cfg: Dict,
        embedder: Optional[Embedder] = None,
        executor: Optional[Executor] = None,
        max_workers: Optional[int] = None,
        worker_target: Callable = worker_main,
    ):
        workers_cfg = cfg.get("workers", {})
        self.cfg = cfg
        self.max_workers = int(max_workers if max_workers is not None else workers_cfg.get("max_workers", 0))
        self.shard_size = max(1, int(workers_cfg.get("shard_size", 16)))
        self.task_timeout_s = float(workers_cfg.get("task_timeout_s", 300.0))
        self._ctx = multiprocessing.get_context("spawn")
        self._slots: List[Optional[_Worker]] = []
        self._outbox = None
        self._degraded = False
        self._embedder = embedder
        self._chunker = Chunker.from_config(cfg)
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="codeseek-inline")
        self._poll_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="codeseek-pool")
        self._task_ids = itertools.count(1)
        self._worker_ids = itertools.count(0)
        self._lock = asyncio.Lock()
        self._worker_target = worker_target

    @property
    def parallel(self) -> bool:
        return self.max_workers > 0 and not self._degraded

    @property
    def worker_count(self) -> int:
        return sum(1 for w in self._slots if w is not None and w.process.is_alive())

    def _local_embedder(self) -> Embedder:
        if self._embedder is None:
            self._embedder = make_embedder(self.cfg)
        return self._embedder

    def _spawn(self) -> Optional[_Worker]:
        worker_id = next(self._worker_ids)
        try:
            if self._outbox is None:
                self._outbox = self._ctx.Queue()
            inbox = self._ctx.Queue()
            process = self._ctx.Process(
                target=self._worker_target,
                args=(worker_id, self.cfg, inbox, self._outbox),
                name=f"codeseek-worker-{worker_id}",
                daemon=True,
            )
            process.start()
        except (OSError, RuntimeError, ValueError) as e:
            logger.warning(f"Could not start worker process: {e}")
            return None
        logger.debug(f"Started worker {worker_id} (pid {process.pid})")
        return _Worker(worker_id, process, inbox)

    def _retire(self, worker: _Worker) -> None:
        if worker.process.is_alive():
            worker.process.terminate()
        worker.process.join(timeout=5)
        worker.inbox.close()

    def _ensure_slots(self, wanted: int) -> int:
        """Bring up to `wanted` workers alive. Returns how many are usable."""
        while len(self._slots) < wanted:
            self._slots.append(None)
        for slot in range(wanted):
            worker = self._slots[slot]
            if worker is not None and worker.process.is_alive():
                continue
            if worker is not None:
                self._retire(worker)
            self._slots[slot] = self._spawn()
        usable = sum(1 for w in self._slots[:wanted] if w is not None)
        if usable == 0:
            logger.warning("No worker process could be started; running in process")
            self._degraded = True
        return usable

    def _poll(self, timeout: float):
        try:
            return self._outbox.get(timeout=timeout)
        except queue.Empty:
            return None

    async def _dispatch(
        self,
        units: Sequence,
        build_task: Callable[[int, object], tuple],
        on_message: Callable[[str, tuple, int, bool], Awaitable[None]],
        on_unit_failed: Callable[[int, WorkerError], Awaitable[None]],
        cancel_event=None,
    ) -> Optional[bool]:
        """Run `units` on the workers.

        Returns:
            None if no worker is available, otherwise whether the run was
            cancelled before every unit was dispatched
        """
        if self._ensure_slots(min(self.max_workers, len(units))) == 0:
            return None
        slots = [s for s, w in enumerate(self._slots[:min(self.max_workers, len(units))]) if w is not None]
        # Static round-robin: unit i belongs to the (i mod n)-th usable slot
        queues: Dict[int, deque] = {slot: deque() for slot in slots}
        for i in range(len(units)):
            queues[slots[i % len(slots)]].append(i)

        active: Dict[int, Tuple[int, int]] = {}
        owners: Dict[int, Tuple[int, int]] = {}
        cancelled = False
        loop = asyncio.get_running_loop()

        def dispatch_next(slot: int) -> None:
            worker = self._slots[slot]
            if cancelled or worker is None or not queues[slot]:
                return
            unit = queues[slot].popleft()
            task_id = next(self._task_ids)
            worker.inbox.put(build_task(task_id, units[unit]))
            worker.deadline = time.monotonic() + self.task_timeout_s
            active[slot] = (task_id, unit)
            owners[task_id] = (slot, unit)

        for slot in slots:
            dispatch_next(slot)

        while active:
            if not cancelled and cancel_event is not None and cancel_event.is_set():
                logger.info("Cancellation requested; draining in-flight shards")
                cancelled = True

            msg = await loop.run_in_executor(self._poll_executor, self._poll, POLL_INTERVAL_S)
            if msg is not None:
                kind, task_id = msg[0], msg[2]
                owner = owners.get(task_id)
                # Late message from a worker that was already replaced
                if owner is None:
                    continue
                slot, unit = owner
                self._slots[slot].deadline = time.monotonic() + self.task_timeout_s
                finished = kind in (MSG_DONE, MSG_ERROR, MSG_FATAL)
                if finished:
                    del active[slot]
                    del owners[task_id]
                await on_message(kind, msg, unit, cancelled)
                if finished:
                    dispatch_next(slot)

            now = time.monotonic()
            for slot, (task_id, unit) in list(active.items()):
                worker = self._slots[slot]
                if not worker.process.is_alive():
                    error: WorkerError = WorkerCrash(
                        f"Worker {worker.worker_id} exited with code {worker.process.exitcode}"
                    )
                elif now > worker.deadline:
                    error = WorkerTimeout(
                        f"Worker {worker.worker_id} gave no answer within {self.task_timeout_s:.0f}s"
                    )
                else:
                    continue
                logger.warning(str(error))
                del active[slot]
                del owners[task_id]
                self._retire(worker)
                await on_unit_failed(unit, error)
                self._slots[slot] = self._spawn()
                if self._slots[slot] is None:
                    lost = WorkerCrash(f"Worker {worker.worker_id} could not be replaced")
                    while queues[slot]:
                        await on_unit_failed(queues[slot].popleft(), lost)
                dispatch_next(slot)

        return cancelled

    async def run_parallel_index(
        self,
        root: Path,
        files: List[str],
        known_hashes: Optional[Dict[str, str]] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_result: Optional[ResultCallback] = None,
        cancel_event=None,
    ) -> IndexResult:
        """Chunk and embed `files` (project-relative paths) under `root`.

        Workers never touch the store: every PreparedFile is handed to
        `on_result` (awaited in the calling loop) or collected in
        `IndexResult.prepared`. Progress is reported once per file.

        Raises:
            ModelUnavailable: If the embedding model cannot be loaded
        """
        result = IndexResult()
        known = dict(known_hashes or {})
        total = len(files)
        processed = 0
        if not files:
            return result

        def progress(rel: str, worker_id: Optional[int] = None) -> None:
            nonlocal processed
            processed += 1
            if on_progress is not None:
                on_progress(IndexProgress(processed, total, rel, worker_id))

        def fail(rel: str, error) -> None:
            result.failed.append(rel)
            result.errors[rel] = str(error)
            logger.warning(f"Failed to index {rel}: {error}")

        async def accept(prepared: PreparedFile) -> None:
            if on_result is None:
                result.prepared.append(prepared)
            else:
                try:
                    await on_result(prepared)
                except WriteFailure as e:
                    fail(prepared.file_path, e)
                    return
                except Exception as e:
                    # A failed commit costs this file only
                    fail(prepared.file_path, f"{type(e).__name__}: {e}")
                    return
            result.succeeded.append(prepared.file_path)

        if self.parallel and not self._lock.locked():
            async with self._lock:
                shards = [files[i:i + self.shard_size] for i in range(0, len(files), self.shard_size)]
                pending = {i: set(shard) for i, shard in enumerate(shards)}
                fatal: List[str] = []

                async def on_message(kind: str, msg: tuple, unit: int, discard: bool) -> None:
                    worker_id = msg[1]
                    if kind == MSG_FILE:
                        prepared: PreparedFile = msg[3]
                        pending[unit].discard(prepared.file_path)
                        if not discard:
                            await accept(prepared)
                        progress(prepared.file_path, worker_id)
                    elif kind == MSG_SKIPPED:
                        rel, reason = msg[3], msg[4]
                        pending[unit].discard(rel)
                        result.skipped.append(rel)
                        logger.info(f"Skipped {rel}: {reason}")
                        progress(rel, worker_id)
                    elif kind == MSG_FILE_ERROR:
                        rel = msg[3]
                        pending[unit].discard(rel)
                        fail(rel, msg[4])
                        progress(rel, worker_id)
                    elif kind == MSG_FATAL:
                        fatal.append(msg[3])
                        for rel in sorted(pending.pop(unit, ())):
                            fail(rel, msg[3])
                            progress(rel, worker_id)

                async def on_unit_failed(unit: int, error: WorkerError) -> None:
                    for rel in sorted(pending.pop(unit, ())):
                        fail(rel, error)
                        progress(rel)

                outcome = await self._dispatch(
                    shards,
                    lambda task_id, shard: ("index", task_id, str(root), list(shard), {r: known[r] for r in shard if r in known}),
                    on_message,
                    on_unit_failed,
                    cancel_event,
                )
                if outcome is not None:
                    result.cancelled = outcome
                    if fatal:
                        raise ModelUnavailable(fatal[0])
                    return result

        loop = asyncio.get_running_loop()
        embedder = self._local_embedder()
        for rel in files:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                break
            try:
                prepared = await loop.run_in_executor(
                    self._executor, prepare_file, Path(root), rel, self._chunker, embedder, known.get(rel)
                )
            except FileSkipped as e:
                result.skipped.append(rel)
                logger.info(f"Skipped {rel}: {e.reason}")
            except ModelUnavailable:
                raise
            except Exception as e:
                fail(rel, f"{type(e).__name__}: {e}")
            else:
                await accept(prepared)
            progress(rel)
        return result

    async def run_parallel_search(
        self,
        shards: Sequence[Path],
        query_vector: List[float],
        k: int,
        filters: Optional[SearchFilters] = None,
        min_similarity: Optional[float] = None,
    ) -> List[SearchHit]:
        """Search several index directories and merge their top-k by similarity.

        A shard that fails is logged and left out of the merge.

        Returns:
            (chunk, similarity, shard path) triples, best first
        """
        hits: List[SearchHit] = []
        shards = [str(s) for s in shards]
        if not shards or k <= 0:
            return hits

        done = False
        if self.parallel and len(shards) > 1 and not self._lock.locked():
            async with self._lock:

                async def on_message(kind: str, msg: tuple, unit: int, discard: bool) -> None:
                    if kind == MSG_DONE:
                        hits.extend((chunk, score, shards[unit]) for chunk, score in msg[3])
                    elif kind == MSG_ERROR:
                        logger.warning(f"Search failed on {shards[unit]}: {msg[3]}")

                async def on_unit_failed(unit: int, error: WorkerError) -> None:
                    logger.warning(f"Search failed on {shards[unit]}: {error}")

                outcome = await self._dispatch(
                    shards,
                    lambda task_id, shard: ("search", task_id, shard, list(query_vector), k, filters, min_similarity),
                    on_message,
                    on_unit_failed,
                )
                done = outcome is not None

        if not done:
            loop = asyncio.get_running_loop()
            for shard in shards:
                try:
                    found = await loop.run_in_executor(
                        self._executor, _search_one, self.cfg, shard, query_vector, k, filters, min_similarity
                    )
                except Exception as e:
                    logger.warning(f"Search failed on {shard}: {e}")
                    continue
                hits.extend((chunk, score, shard) for chunk, score in found)

        hits.sort(key=lambda h: (-h[1], h[0].file_path, h[0].chunk_index))
        return hits[:k]

    def close(self) -> None:
        for worker in self._slots:
            if worker is None:
                continue
            try:
                worker.inbox.put(None)
            except (OSError, ValueError) as e:
                logger.debug(f"Worker {worker.worker_id} inbox already closed: {e}")
        for worker in self._slots:
            if worker is None:
                continue
            worker.process.join(timeout=5)
            self._retire(worker)
        self._slots = []
        if self._outbox is not None:
            self._outbox.close()
            self._outbox = None
        self._poll_executor.shutdown(wait=False)
        if self._owns_executor:
            self._executor.shutdown(wait=False)
        logger.debug("Worker pool closed")
