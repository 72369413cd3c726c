"""Qdrant vector database backend (embedded, on-disk)."""

from __future__ import annotations

import dataclasses
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchAny,
    MatchValue,
    PointIdsList,
    PointStruct,
    SearchParams,
    VectorParams,
)

from ..core.models import Chunk, Embedding, FileRecord, IndexStats
from ..exceptions import SearchFailure, StoreUnavailable, WriteFailure
from ..utils.file_utils import dir_size, ensure_dir
from .base import SearchFilters, VectorStore
from .database import FileRecordRow, make_session_factory
from .manifest import MANIFEST_NAME, Manifest, read_manifest, write_manifest

logger = logging.getLogger(__name__)

UPSERT_BATCH_SIZE = 100


class QdrantVectorStore(VectorStore):
    """Project index kept under one directory.

    Layout::

        <index_path>/vectors/       embedded Qdrant collection
        <index_path>/files.db       FileRecords (SQLite)
        <index_path>/manifest.json  model version, dimension, chunking fingerprint

    The embedded Qdrant client locks its directory, so only one store may
    have a given index open at a time.
    """

    def __init__(self, index_path: Path, chunking_fingerprint: str = "", collection_name: str = "chunks"):
        self.index_path = Path(index_path)
        self.chunking_fingerprint = chunking_fingerprint
        self.collection_name = collection_name
        self.client: Optional[QdrantClient] = None
        self._engine = None
        self._session_factory = None
        self._model_version: Optional[str] = None
        self._dimension: Optional[int] = None

    @property
    def manifest_path(self) -> Path:
        return self.index_path / MANIFEST_NAME

    @property
    def model_version(self) -> Optional[str]:
        return self._model_version

    @property
    def is_open(self) -> bool:
        return self.client is not None

    def initialize(self, db_path: Optional[Path] = None) -> None:
        if self.client is not None:
            return
        if db_path is not None:
            self.index_path = Path(db_path)

        try:
            ensure_dir(self.index_path)
            self.client = QdrantClient(path=str(self.index_path / "vectors"))
            self._engine, self._session_factory = make_session_factory(self.index_path / "files.db")
        except Exception as e:
            self.close()
            raise StoreUnavailable(f"Cannot open index at {self.index_path}: {e}") from e

        manifest = read_manifest(self.manifest_path)
        if manifest is not None and self._collection_dim() == manifest.dimension:
            self._model_version = manifest.model_version
            self._dimension = manifest.dimension

        self.reconcile()
        logger.info(f"Opened index at {self.index_path} (model: {self._model_version or 'unbound'})")

    def _require_open(self) -> None:
        if self.client is None:
            raise StoreUnavailable("Vector store is not initialized")

    def _collection_dim(self) -> Optional[int]:
        if not self.client.collection_exists(self.collection_name):
            return None
        info = self.client.get_collection(collection_name=self.collection_name)
        return info.config.params.vectors.size

    def _ensure_collection(self, vector_dim: int) -> None:
        if self.client.collection_exists(self.collection_name):
            return
        self.client.create_collection(
            collection_name=self.collection_name,
            vectors_config=VectorParams(size=vector_dim, distance=Distance.COSINE),
        )

    def bind_model(self, model_version: str, dimension: int) -> bool:
        self._require_open()
        manifest = read_manifest(self.manifest_path)
        if (
            manifest is not None
            and manifest.matches(model_version, dimension, self.chunking_fingerprint)
            and self._collection_dim() == dimension
        ):
            self._model_version = model_version
            self._dimension = dimension
            return False

        had_data = manifest is not None or self._row_count() > 0 or self._collection_dim() is not None
        if had_data:
            logger.warning(
                f"Index at {self.index_path} was built with "
                f"{manifest.model_version if manifest else 'an unknown model'}; "
                f"discarding it for {model_version}"
            )
        self._drop_everything()
        self._ensure_collection(dimension)
        write_manifest(
            self.manifest_path,
            Manifest(model_version=model_version, dimension=dimension, chunking=self.chunking_fingerprint),
        )
        self._model_version = model_version
        self._dimension = dimension
        return had_data

    def _drop_everything(self) -> None:
        if self.client.collection_exists(self.collection_name):
            self.client.delete_collection(collection_name=self.collection_name)
        with self._session_factory() as db:
            db.query(FileRecordRow).delete()
            db.commit()

    def _row_count(self) -> int:
        with self._session_factory() as db:
            return db.query(FileRecordRow).count()

    def _point_ids(self) -> List[str]:
        if not self.client.collection_exists(self.collection_name):
            return []
        ids: List[str] = []
        offset = None
        while True:
            points, next_offset = self.client.scroll(
                collection_name=self.collection_name,
                limit=256,
                offset=offset,
                with_payload=False,
                with_vectors=False,
            )
            ids.extend(str(p.id) for p in points)
            if next_offset is None:
                break
            offset = next_offset
        return ids

    def _delete_points(self, ids: List[str]) -> None:
        if not ids or not self.client.collection_exists(self.collection_name):
            return
        self.client.delete(
            collection_name=self.collection_name,
            points_selector=PointIdsList(points=list(ids)),
            wait=True,
        )

    def reconcile(self) -> Tuple[int, int]:
        """Restore the one-to-one mapping between FileRecords and points.

        Points no record refers to are deleted. Records whose points are
        missing are dropped so that the file is embedded again.

        Returns:
            (orphan points deleted, records dropped)
        """
        self._require_open()
        stored = set(self._point_ids())
        referenced = set()
        broken: List[str] = []
        for record in self.list_file_records():
            ids = set(record.chunk_ids)
            if not ids.issubset(stored):
                broken.append(record.file_path)
                continue
            referenced |= ids

        if broken:
            with self._session_factory() as db:
                db.query(FileRecordRow).filter(FileRecordRow.file_path.in_(broken)).delete(synchronize_session=False)
                db.commit()

        orphans = sorted(stored - referenced)
        self._delete_points(orphans)
        if orphans or broken:
            logger.info(f"Reconciled index: removed {len(orphans)} orphan points, {len(broken)} incomplete records")
        return len(orphans), len(broken)

    def upsert_file(self, record: FileRecord, chunks: List[Chunk], vectors: List[List[float]]) -> None:
        self._require_open()
        if self._model_version is None:
            raise WriteFailure("Store is not bound to an embedding model", file_path=record.file_path)
        if len(chunks) != len(vectors):
            raise WriteFailure(
                f"Got {len(chunks)} chunks but {len(vectors)} vectors", file_path=record.file_path
            )
        for i, vector in enumerate(vectors):
            if len(vector) != self._dimension:
                raise WriteFailure(
                    f"Vector {i} has dimension {len(vector)}, expected {self._dimension}",
                    file_path=record.file_path,
                )

        try:
            previous = self.get_file_record(record.file_path)
        except Exception as e:
            raise WriteFailure(f"Cannot read record of {record.file_path}: {e}", file_path=record.file_path) from e
        old_ids = set(previous.chunk_ids) if previous else set()
        new_ids = [c.chunk_id for c in chunks]
        staged = [i for i in new_ids if i not in old_ids]
        extension = os.path.splitext(record.file_path)[1].lower()

        points = []
        for chunk, vector in zip(chunks, vectors):
            embedding = Embedding(chunk.chunk_id, list(vector), self._model_version)
            payload = chunk.to_payload()
            payload["extension"] = extension
            payload["model_version"] = embedding.model_version
            points.append(PointStruct(id=embedding.chunk_id, vector=embedding.vector, payload=payload))

        record = dataclasses.replace(
            record,
            chunk_ids=new_ids,
            last_indexed_at=record.last_indexed_at or datetime.now(timezone.utc),
        )
        try:
            for i in range(0, len(points), UPSERT_BATCH_SIZE):
                self.client.upsert(
                    collection_name=self.collection_name,
                    points=points[i:i + UPSERT_BATCH_SIZE],
                    wait=True,
                )
            with self._session_factory() as db:
                row = db.get(FileRecordRow, record.file_path)
                if row is None:
                    row = FileRecordRow(file_path=record.file_path)
                    db.add(row)
                row.update_from(record)
                db.commit()
        except Exception as e:
            try:
                self._delete_points(staged)
            except Exception as cleanup_error:
                logger.warning(f"Could not remove staged points for {record.file_path}: {cleanup_error}")
            raise WriteFailure(f"Failed to write {record.file_path}: {e}", file_path=record.file_path) from e

        stale = [i for i in old_ids if i not in set(new_ids)]
        try:
            self._delete_points(stale)
        except Exception as e:
            # Left for reconcile() on next open
            logger.warning(f"Could not remove {len(stale)} superseded points for {record.file_path}: {e}")

    def delete_file(self, file_path: str) -> int:
        self._require_open()
        try:
            with self._session_factory() as db:
                row = db.get(FileRecordRow, file_path)
                if row is None:
                    return 0
                ids = row.to_record().chunk_ids
                db.delete(row)
                db.commit()
        except Exception as e:
            raise WriteFailure(f"Failed to remove {file_path}: {e}", file_path=file_path) from e
        try:
            self._delete_points(ids)
        except Exception as e:
            # The record is gone, so reconcile() drops these points on next open
            logger.warning(f"Could not remove {len(ids)} points of {file_path}: {e}")
        return len(ids)

    def get_file_record(self, file_path: str) -> Optional[FileRecord]:
        self._require_open()
        with self._session_factory() as db:
            row = db.get(FileRecordRow, file_path)
            return row.to_record() if row is not None else None

    def list_file_records(self) -> List[FileRecord]:
        self._require_open()
        with self._session_factory() as db:
            rows = db.query(FileRecordRow).order_by(FileRecordRow.file_path).all()
            return [row.to_record() for row in rows]

    def known_hashes(self) -> Dict[str, str]:
        self._require_open()
        with self._session_factory() as db:
            return dict(db.query(FileRecordRow.file_path, FileRecordRow.content_hash).all())

    def _build_filter(self, filters: Optional[SearchFilters]) -> Filter:
        must = [FieldCondition(key="model_version", match=MatchValue(value=self._model_version))]
        if filters is not None and filters.extensions:
            exts = [e.lower() if e.startswith(".") else "." + e.lower() for e in filters.extensions]
            must.append(FieldCondition(key="extension", match=MatchAny(any=exts)))
        if filters is not None and filters.languages:
            must.append(FieldCondition(key="language", match=MatchAny(any=list(filters.languages))))
        return Filter(must=must)

    def search(
        self,
        query_vector: List[float],
        k: int,
        filters: Optional[SearchFilters] = None,
        min_similarity: Optional[float] = None,
    ) -> List[Tuple[Chunk, float]]:
        if self.client is None or self._model_version is None or k <= 0:
            return []
        if not self.client.collection_exists(self.collection_name):
            return []
        if len(query_vector) != self._dimension:
            logger.warning(
                f"Query vector has dimension {len(query_vector)} but index at {self.index_path} "
                f"holds {self._dimension}; no results"
            )
            return []

        try:
            response = self.client.query_points(
                collection_name=self.collection_name,
                query=list(query_vector),
                limit=k,
                query_filter=self._build_filter(filters),
                search_params=SearchParams(exact=True),
                score_threshold=min_similarity,
                with_payload=True,
                with_vectors=False,
            )
        except Exception as e:
            logger.error(f"Error searching in collection '{self.collection_name}': {e}")
            raise SearchFailure(f"Search in {self.index_path} failed: {e}") from e

        return [(Chunk.from_payload(point.payload), float(point.score)) for point in response.points]

    def stats(self) -> IndexStats:
        self._require_open()
        records = self.list_file_records()
        embeddings = 0
        if self.client.collection_exists(self.collection_name):
            embeddings = self.client.count(collection_name=self.collection_name, exact=True).count
        indexed = [r.last_indexed_at for r in records if r.last_indexed_at is not None]
        return IndexStats(
            total_files=len(records),
            total_chunks=sum(len(r.chunk_ids) for r in records),
            total_embeddings=embeddings,
            database_size=dir_size(self.index_path),
            last_indexed_at=max(indexed) if indexed else None,
        )

    def clear(self) -> None:
        self._require_open()
        self._drop_everything()
        if self._dimension is not None:
            self._ensure_collection(self._dimension)
        logger.info(f"Cleared index at {self.index_path}")

    def close(self) -> None:
        if self.client is not None:
            try:
                self.client.close()
            finally:
                self.client = None
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
