"""Embedding models for semantic search."""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np

from ..exceptions import ModelUnavailable
from .tokens import tokenize

logger = logging.getLogger(__name__)


def l2_normalize(matrix) -> np.ndarray:
    """Row-normalise so that cosine similarity is a plain dot product."""
    arr = np.asarray(matrix, dtype=np.float32)
    if arr.ndim == 1:
        arr = arr[None, :]
    norms = np.linalg.norm(arr, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return arr / norms


class Embedder:
    """Abstract base class for embedding models.

    An instance owns its model exclusively and is not meant to be shared by
    concurrent callers; parallel work gives each worker process its own
    Embedder instead.
    """

    batch_size: int = 32

    def initialize(self) -> None:
        """Load the model. Safe to call repeatedly; only the first call loads."""
        raise NotImplementedError

    @property
    def dimension(self) -> int:
        raise NotImplementedError

    @property
    def model_version(self) -> str:
        raise NotImplementedError

    def _encode(self, texts: List[str]) -> np.ndarray:
        raise NotImplementedError

    def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed multiple texts into L2-normalised vectors, in batches."""
        if not texts:
            return []
        self.initialize()
        out: List[List[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i:i + self.batch_size]
            out.extend(row.tolist() for row in l2_normalize(self._encode(batch)))
        return out

    def embed_query(self, text: str) -> List[float]:
        """Embed a single query text into a vector."""
        return self.embed([text])[0]

    def dispose(self) -> None:
        pass


class SentenceTransformersEmbedder(Embedder):
    """Embedder using SentenceTransformers library.

    The model is downloaded once into `cache_dir` (shared between projects)
    and loaded lazily on first use.
    """

    def __init__(
        self,
        model_name: str,
        cache_dir: Optional[str] = None,
        batch_size: int = 32,
        local_files_only: bool = False,
        device: Optional[str] = None,
    ) -> None:
        self.model_name = model_name
        self.cache_dir = cache_dir
        self.batch_size = batch_size
        self.local_files_only = local_files_only
        self.device = device
        self.model = None
        self._dimension: Optional[int] = None

    def initialize(self) -> None:
        if self.model is not None:
            return
        if self.cache_dir:
            Path(self.cache_dir).mkdir(parents=True, exist_ok=True)

        logger.info(f"Loading embedding model {self.model_name} (cache: {self.cache_dir})")
        try:
            from sentence_transformers import SentenceTransformer  # type: ignore

            model = SentenceTransformer(
                self.model_name,
                cache_folder=self.cache_dir,
                device=self.device,
                local_files_only=self.local_files_only,
            )
            dimension = int(model.get_sentence_embedding_dimension())
        except Exception as e:
            raise ModelUnavailable(f"Failed to load embedding model {self.model_name!r}: {e}") from e

        self.model = model
        self._dimension = dimension
        logger.info(f"Embedding model ready ({dimension} dimensions)")

    @property
    def dimension(self) -> int:
        self.initialize()
        return self._dimension

    @property
    def model_version(self) -> str:
        return f"{self.model_name}:{self.dimension}"

    def _encode(self, texts: List[str]) -> np.ndarray:
        return self.model.encode(
            texts,
            batch_size=self.batch_size,
            normalize_embeddings=True,
            show_progress_bar=False,
            convert_to_numpy=True,
        )

    def dispose(self) -> None:
        self.model = None


class HashingEmbedder(Embedder):
    """Model-free embedder based on signed feature hashing.

    Identifier-split word tokens contribute with weight 1.0 and their
    character trigrams with weight 0.5, so related spellings such as
    'config' and 'configuration' land close together. Fully deterministic
    and offline.
    """

    VERSION = "hashing-v1"

    def __init__(self, dimension: int = 384, batch_size: int = 256) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self._dimension = dimension
        self.batch_size = batch_size

    def initialize(self) -> None:
        pass

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_version(self) -> str:
        return f"{self.VERSION}:{self._dimension}"

    def _features(self, text: str):
        for token in tokenize(text):
            yield token, 1.0
            if len(token) >= 4:
                padded = f"^{token}$"
                for i in range(len(padded) - 2):
                    yield "#" + padded[i:i + 3], 0.5

    def _encode(self, texts: List[str]) -> np.ndarray:
        out = np.zeros((len(texts), self._dimension), dtype=np.float32)
        for row, text in enumerate(texts):
            for feature, weight in self._features(text):
                digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
                h = int.from_bytes(digest, "little", signed=False)
                sign = -1.0 if ((h >> 8) & 1) else 1.0
                out[row, h % self._dimension] += sign * weight
        return out


def make_embedder(cfg: Dict) -> Embedder:
    """Create embedder from config.

    Args:
        cfg: Configuration dictionary

    Returns:
        Embedder instance (not yet loaded)

    Raises:
        ModelUnavailable: If the backend is unknown
    """
    emb_cfg = cfg.get("embedding", {})
    backend = str(emb_cfg.get("backend", "sentence_transformers")).strip().lower()

    if backend == "hashing":
        return HashingEmbedder(dimension=int(emb_cfg.get("hashing_dimension", 384)))

    if backend != "sentence_transformers":
        raise ModelUnavailable(f"Unknown embedding backend: {backend!r}")

    return SentenceTransformersEmbedder(
        model_name=emb_cfg.get("sentence_transformers_model", "sentence-transformers/all-MiniLM-L6-v2"),
        cache_dir=cfg.get("model_cache_dir"),
        batch_size=int(emb_cfg.get("batch_size", 32)),
        local_files_only=bool(emb_cfg.get("local_files_only", False)),
        device=emb_cfg.get("device"),
    )
