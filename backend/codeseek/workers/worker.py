"""Worker process main loop.

Module-level so that it can be the target of a spawned process.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, Optional

from ..core.chunking import Chunker
from ..core.embeddings import Embedder, make_embedder
from ..exceptions import FileSkipped, ModelUnavailable
from ..indexing.pipeline import prepare_file
from ..storage.factory import open_index

logger = logging.getLogger(__name__)

# Message kinds sent back to the pool
MSG_FILE = "file"
MSG_SKIPPED = "skipped"
MSG_FILE_ERROR = "file_error"
MSG_DONE = "done"
MSG_ERROR = "error"
MSG_FATAL = "fatal"


def _index_shard(worker_id: int, task, chunker: Chunker, embedder: Embedder, outbox) -> None:
    _, task_id, root, files, known_hashes = task
    root = Path(root)
    for rel in files:
        try:
            prepared = prepare_file(root, rel, chunker, embedder, known_hashes.get(rel))
        except FileSkipped as e:
            outbox.put((MSG_SKIPPED, worker_id, task_id, rel, e.reason))
            continue
        except ModelUnavailable:
            raise
        except Exception as e:
            outbox.put((MSG_FILE_ERROR, worker_id, task_id, rel, f"{type(e).__name__}: {e}"))
            continue
        outbox.put((MSG_FILE, worker_id, task_id, prepared))
    outbox.put((MSG_DONE, worker_id, task_id, None))


def _search_shard(worker_id: int, task, cfg: Dict, outbox) -> None:
    _, task_id, index_path, query_vector, k, filters, min_similarity = task
    store = open_index(Path(index_path), cfg)
    try:
        store.initialize()
        hits = store.search(query_vector, k, filters=filters, min_similarity=min_similarity)
    except Exception as e:
        outbox.put((MSG_ERROR, worker_id, task_id, f"{type(e).__name__}: {e}"))
        return
    finally:
        store.close()
    outbox.put((MSG_DONE, worker_id, task_id, hits))


def worker_main(worker_id: int, cfg: Dict, inbox, outbox) -> None:
    """Serve tasks from `inbox` until a None sentinel arrives.

    Tasks:
        ("index", task_id, root, [rel_path, ...], {rel_path: content_hash})
        ("search", task_id, index_path, query_vector, k, filters, min_similarity)
    """
    logging.basicConfig(
        level=os.getenv("CODESEEK_LOG_LEVEL", "WARNING").upper(),
        format=f"%(asctime)s [worker-{worker_id}] %(levelname)s %(name)s: %(message)s",
    )
    chunker = Chunker.from_config(cfg)
    embedder: Optional[Embedder] = None

    while True:
        task = inbox.get()
        if task is None:
            break
        kind, task_id = task[0], task[1]

        if kind == "search":
            _search_shard(worker_id, task, cfg, outbox)
            continue

        try:
            if embedder is None:
                embedder = make_embedder(cfg)
                embedder.initialize()
            _index_shard(worker_id, task, chunker, embedder, outbox)
        except ModelUnavailable as e:
            outbox.put((MSG_FATAL, worker_id, task_id, str(e)))

    if embedder is not None:
        embedder.dispose()
