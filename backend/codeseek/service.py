"""Index service: one object that owns a project's index and reports on it."""

from __future__ import annotations

import asyncio
import dataclasses
import functools
import logging
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import load_config
from .core.chunking import check_grammars
from .core.embeddings import Embedder, make_embedder
from .core.models import FileEvent, IndexProgress, IndexSummary
from .exceptions import CodeSeekError, ModelUnavailable, StoreUnavailable, ValidationError
from .indexing.indexer import Indexer, IndexState
from .search.searcher import Searcher
from .storage.base import VectorStore
from .storage.factory import create_vector_store
from .workers.pool import WorkerPool

logger = logging.getLogger(__name__)

EVENT_READY = "ready"
EVENT_INDEXING_START = "indexing-start"
EVENT_INDEXING_PROGRESS = "indexing-progress"
EVENT_INDEXING_COMPLETE = "indexing-complete"
EVENT_ERROR = "error"


@dataclasses.dataclass
class ServiceEvent:
    type: str
    data: Dict = dataclasses.field(default_factory=dict)
    timestamp: float = dataclasses.field(default_factory=time.time)

    def to_dict(self) -> Dict:
        return dataclasses.asdict(self)


class Subscription:
    """Bounded event queue of one subscriber.

    When full, the oldest progress event is dropped to make room. Other
    events are always kept, even past the bound.
    """

    def __init__(self, maxsize: int):
        self.maxsize = max(1, maxsize)
        self.dropped = 0
        self._items: deque = deque()
        self._ready = asyncio.Event()
        self.closed = False

    def __len__(self) -> int:
        return len(self._items)

    def put(self, event: ServiceEvent) -> None:
        if len(self._items) >= self.maxsize:
            for i, queued in enumerate(self._items):
                if queued.type == EVENT_INDEXING_PROGRESS:
                    del self._items[i]
                    self.dropped += 1
                    break
            else:
                if event.type == EVENT_INDEXING_PROGRESS:
                    self.dropped += 1
                    return
        self._items.append(event)
        self._ready.set()

    def get_nowait(self) -> Optional[ServiceEvent]:
        return self._items.popleft() if self._items else None

    async def get(self) -> Optional[ServiceEvent]:
        """Next event; None once the subscription is closed and drained."""
        while not self._items:
            if self.closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        return self._items.popleft()

    def close(self) -> None:
        self.closed = True
        self._ready.set()

    def __aiter__(self):
        return self

    async def __anext__(self) -> ServiceEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventChannel:
    """Fan-out of service events to queue subscribers and plain callbacks."""

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscribers: List[Subscription] = []
        self._listeners: List[Callable[[ServiceEvent], None]] = []

    def subscribe(self) -> Subscription:
        sub = Subscription(self.queue_size)
        self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)
        sub.close()

    def add_listener(self, callback: Callable[[ServiceEvent], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[ServiceEvent], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def publish(self, event_type: str, data: Optional[Dict] = None) -> ServiceEvent:
        event = ServiceEvent(type=event_type, data=dict(data or {}))
        for sub in list(self._subscribers):
            sub.put(event)
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Event listener failed on {event_type}: {e}")
        return event

    def close(self) -> None:
        for sub in list(self._subscribers):
            sub.close()
        self._subscribers = []


class IndexService:
    """Facade over the store, embedder, indexer and searcher of one project.

    Methods return plain status dicts rather than raising, so hosts can pass
    them straight to a UI. Progress and failures are also published on
    `events`.
    """

    def __init__(self, overrides: Optional[Dict] = None):
        self.overrides = overrides or {}
        self.events = EventChannel()
        self.project_path: Optional[Path] = None
        self.cfg: Optional[Dict] = None
        self.store: Optional[VectorStore] = None
        self.embedder: Optional[Embedder] = None
        self.pool: Optional[WorkerPool] = None
        self.indexer: Optional[Indexer] = None
        self.searcher: Optional[Searcher] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._ready = False
        self._error: Optional[str] = None
        self._build_task: Optional[asyncio.Task] = None
        self._cancel: Optional[asyncio.Event] = None
        self.last_summary: Optional[IndexSummary] = None
        # Degradations found at initialize, such as missing grammars
        self.warnings: List[str] = []

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def indexing(self) -> bool:
        return self.indexer is not None and self.indexer.state is IndexState.INDEXING

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))

    def _report_error(self, message: str) -> None:
        self._error = message
        self.events.publish(EVENT_ERROR, {"error": message})

    async def initialize(self, project_path) -> Dict:
        """Open (or create) the index of `project_path` and load the model.

        Returns:
            {"ready": bool, "error": str, "warnings": [str]}  ("error" only when
            not ready, "warnings" only when some grammar is missing)
        """
        path = Path(project_path).expanduser().resolve()
        if self._ready and self.project_path == path:
            return {"ready": True}
        if self.project_path is not None:
            await self.dispose()

        self.project_path = path
        if not path.is_dir():
            self._report_error(f"Project path does not exist: {path}")
            return {"ready": False, "error": self._error}

        self.cfg = load_config(path, self.overrides)
        self.events.queue_size = int(self.cfg.get("events", {}).get("queue_size", 256))
        if not self.cfg.get("enabled", True):
            self._error = "not enabled"
            logger.info(f"Semantic search is not enabled for {path}")
            return {"ready": False, "error": self._error}

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="codeseek-store")
        store = create_vector_store(self.cfg, path)
        try:
            await self._run(store.initialize)
            self.store = store
            embedder = make_embedder(self.cfg)
            await self._run(embedder.initialize)
            self.embedder = embedder
            reset = await self._run(store.bind_model, embedder.model_version, embedder.dimension)
        except (StoreUnavailable, ModelUnavailable) as e:
            logger.error(f"Cannot initialize index for {path}: {e}")
            self._report_error(str(e))
            await self._teardown()
            return {"ready": False, "error": self._error}
        if reset:
            logger.info(f"Index for {path} will be rebuilt for {embedder.model_version}")

        missing = await self._run(check_grammars)
        self.warnings = [
            f"tree-sitter grammar '{name}' is unavailable, its files are chunked by line windows ({reason})"
            for name, reason in sorted(missing.items())
        ]

        self.pool = WorkerPool(self.cfg, embedder=self.embedder, executor=self._executor)
        self.indexer = Indexer(path, self.store, self.embedder, self.cfg, executor=self._executor, pool=self.pool)
        self.searcher = Searcher(self.store, self.embedder, self.cfg, executor=self._executor, pool=self.pool)
        self._ready = True
        self._error = None
        self.events.publish(EVENT_READY, {"project_path": str(path), "model_version": self.embedder.model_version})
        logger.info(f"Index service ready for {path}")

        if self.cfg.get("auto_index", True):
            self._start_build()
        if self.warnings:
            return {"ready": True, "warnings": list(self.warnings)}
        return {"ready": True}

    def _start_build(self) -> asyncio.Task:
        if self._build_task is None or self._build_task.done():
            self._build_task = asyncio.ensure_future(self._build())
        return self._build_task

    async def _build(self) -> Optional[IndexSummary]:
        self._cancel = asyncio.Event()
        announced = False

        def on_progress(progress: IndexProgress) -> None:
            nonlocal announced
            if not announced:
                announced = True
                self.events.publish(EVENT_INDEXING_START, {"total_files": progress.total_files})
                if progress.files_processed == 0:
                    return
            self.events.publish(
                EVENT_INDEXING_PROGRESS,
                {"files_processed": progress.files_processed, "total_files": progress.total_files},
            )

        try:
            summary = await self.indexer.index_directory(cancel_event=self._cancel, on_progress=on_progress)
        except ModelUnavailable as e:
            self._ready = False
            self._report_error(str(e))
            return None
        except CodeSeekError as e:
            logger.error(f"Index build failed: {e}")
            self._report_error(str(e))
            return None
        except Exception as e:
            logger.exception(f"Index build failed unexpectedly: {e}")
            self._report_error(f"{type(e).__name__}: {e}")
            return None

        self.last_summary = summary
        if summary.files_failed:
            self._error = f"{summary.files_failed} of {summary.files_total} files failed to index"
        else:
            self._error = None
        self.events.publish(
            EVENT_INDEXING_COMPLETE,
            {
                "chunks_indexed": summary.chunks_indexed,
                "elapsed_ms": summary.elapsed_ms,
                "files_total": summary.files_total,
                "files_failed": summary.files_failed,
                "cancelled": summary.cancelled,
            },
        )
        return summary

    async def reindex(self) -> Dict:
        """Run a full build, or wait for the one already running."""
        if not self._ready:
            return {"success": False, "error": self._error or "Index not initialized"}
        summary = await self._start_build()
        if summary is None:
            return {"success": False, "error": self._error}
        return {"success": True, "summary": summary.to_dict()}

    async def cancel_indexing(self) -> bool:
        """Stop dispatching work for the running build and wait for it to wind down."""
        if self._build_task is None or self._build_task.done():
            return False
        self._cancel.set()
        await self._build_task
        return True

    async def get_status(self) -> Dict:
        stats = None
        if self._ready and self.store is not None:
            stats = (await self._run(self.store.stats)).to_dict()
        return {
            "ready": self._ready,
            "indexing": self.indexing,
            "stats": stats,
            "project_path": str(self.project_path) if self.project_path else None,
            "error": self._error,
            "warnings": list(self.warnings),
        }

    async def search(self, query: str, limit: int = 10, **options) -> Dict:
        if not self._ready:
            return {"success": False, "results": [], "error": self._error or "Index not initialized"}
        try:
            results = await self.searcher.search(query, limit=limit, **options)
        except ValidationError as e:
            return {"success": False, "results": [], "error": str(e)}
        except CodeSeekError as e:
            logger.error(f"Search failed: {e}")
            return {"success": False, "results": [], "error": str(e)}
        except Exception as e:
            logger.exception(f"Search failed unexpectedly: {e}")
            return {"success": False, "results": [], "error": f"{type(e).__name__}: {e}"}
        return {"success": True, "results": [r.to_dict() for r in results]}

    async def clear_index(self) -> Dict:
        if not self._ready:
            return {"success": False, "error": self._error or "Index not initialized"}
        await self.cancel_indexing()
        try:
            await self._run(self.store.clear)
        except CodeSeekError as e:
            self._report_error(str(e))
            return {"success": False, "error": str(e)}
        self.last_summary = None
        return {"success": True}

    async def handle_file_event(self, event: FileEvent) -> Dict:
        """Apply one watcher notification (add, change, unlink, addDir, unlinkDir)."""
        if not self._ready:
            return {"success": False, "error": self._error or "Index not initialized"}
        try:
            if event.event_type in ("add", "change"):
                chunks = await self.indexer.index_file(event.path, content=event.content)
                return {"success": True, "chunks_indexed": chunks}
            if event.event_type == "unlink":
                removed = await self.indexer.remove_file(event.path)
                return {"success": True, "chunks_removed": removed}
            if event.event_type == "addDir":
                summary = await self.indexer.index_directory(event.path)
                return {"success": True, "chunks_indexed": summary.chunks_indexed}
            if event.event_type == "unlinkDir":
                removed = await self.indexer.remove_directory(event.path)
                return {"success": True, "files_removed": removed}
        except ModelUnavailable as e:
            self._ready = False
            self._report_error(str(e))
            return {"success": False, "error": str(e)}
        except CodeSeekError as e:
            logger.warning(f"Could not apply {event.event_type} {event.path}: {e}")
            self.events.publish(EVENT_ERROR, {"error": str(e), "path": event.path})
            return {"success": False, "error": str(e)}
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            logger.exception(f"Could not apply {event.event_type} {event.path}: {message}")
            self.events.publish(EVENT_ERROR, {"error": message, "path": event.path})
            return {"success": False, "error": message}
        return {"success": False, "error": f"Unknown event type: {event.event_type}"}

    async def _teardown(self) -> None:
        if self.pool is not None:
            self.pool.close()
        if self.store is not None and self._executor is not None:
            await self._run(self.store.close)
        elif self.store is not None:
            self.store.close()
        if self.embedder is not None:
            self.embedder.dispose()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        self.store = self.embedder = self.pool = self.indexer = self.searcher = None
        self._executor = None

    async def dispose(self) -> None:
        await self.cancel_indexing()
        await self._teardown()
        self._ready = False
        self._build_task = None
        self.events.close()
        logger.info(f"Index service for {self.project_path} disposed")
