"""Read, hash, chunk and embed a single file.

Pure with respect to the store, so it can run in worker processes as well
as in the orchestrating process.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple

from ..core.chunking import Chunker, detect_language
from ..core.embeddings import Embedder
from ..core.models import PreparedFile
from ..exceptions import FileSkipped
from ..utils.file_utils import text_sha256

logger = logging.getLogger(__name__)

BINARY_SNIFF_BYTES = 8192


def read_source(path: Path, rel_path: str, max_bytes: int) -> Tuple[str, float]:
    """Read a source file as text.

    Raises:
        FileSkipped: If the file is unreadable, binary or too large
    """
    try:
        stat = path.stat()
        if stat.st_size > max_bytes:
            raise FileSkipped(rel_path, "oversized")
        data = path.read_bytes()
    except OSError as e:
        raise FileSkipped(rel_path, f"unreadable ({e.strerror or e})") from e

    if b"\x00" in data[:BINARY_SNIFF_BYTES]:
        raise FileSkipped(rel_path, "binary")
    return data.decode("utf-8", errors="replace"), stat.st_mtime


def prepare_file(
    root: Path,
    rel_path: str,
    chunker: Chunker,
    embedder: Embedder,
    known_hash: Optional[str] = None,
    content: Optional[str] = None,
) -> PreparedFile:
    """Turn one file into chunks and vectors.

    Args:
        root: Project root
        rel_path: Project-relative POSIX path
        chunker: Chunker to split the text
        embedder: Embedder owned by the calling process
        known_hash: Content hash already stored for this file, if any
        content: Text supplied by the caller instead of reading the file

    Returns:
        PreparedFile; `unchanged` is set and nothing is embedded when the
        content hash equals `known_hash`. An empty file yields no chunks.

    Raises:
        FileSkipped: If the file cannot be indexed
        ModelUnavailable: If the embedder cannot be loaded
    """
    path = Path(root) / rel_path
    if content is None:
        text, mtime = read_source(path, rel_path, chunker.max_bytes)
    else:
        text = content
        try:
            mtime = path.stat().st_mtime
        except OSError:
            mtime = 0.0
        reason = chunker.accepts(text)
        if reason in ("binary", "oversized"):
            raise FileSkipped(rel_path, reason)

    content_hash = text_sha256(text)
    language = detect_language(rel_path, text)
    if known_hash is not None and known_hash == content_hash:
        return PreparedFile(
            file_path=rel_path, content_hash=content_hash, mtime=mtime, language=language, unchanged=True
        )

    chunks = chunker.chunk(rel_path, text, language=language)
    vectors = embedder.embed([c.text for c in chunks]) if chunks else []
    logger.debug(f"Prepared {rel_path}: {len(chunks)} chunks")
    return PreparedFile(
        file_path=rel_path,
        content_hash=content_hash,
        mtime=mtime,
        language=language,
        chunks=chunks,
        vectors=vectors,
    )
