"""SQLite bookkeeping of indexed files."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, DateTime, Float, String, Text, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from ..core.models import FileRecord

Base = declarative_base()


class FileRecordRow(Base):
    """One row per indexed file."""

    __tablename__ = "file_records"

    file_path = Column(String(1024), primary_key=True)
    content_hash = Column(String(64), nullable=False, index=True)
    mtime = Column(Float, nullable=False, default=0.0)
    # JSON list of point ids, in chunk order
    chunk_ids = Column(Text, nullable=False, default="[]")
    language = Column(String(32), nullable=False, default="unknown")
    last_indexed_at = Column(DateTime(timezone=True), nullable=False)

    def to_record(self) -> FileRecord:
        indexed_at = self.last_indexed_at
        # SQLite drops tzinfo on the way back
        if indexed_at is not None and indexed_at.tzinfo is None:
            indexed_at = indexed_at.replace(tzinfo=timezone.utc)
        return FileRecord(
            file_path=self.file_path,
            content_hash=self.content_hash,
            mtime=self.mtime,
            chunk_ids=json.loads(self.chunk_ids or "[]"),
            last_indexed_at=indexed_at,
            language=self.language,
        )

    def update_from(self, record: FileRecord) -> None:
        self.content_hash = record.content_hash
        self.mtime = record.mtime
        self.chunk_ids = json.dumps(list(record.chunk_ids))
        self.language = record.language
        self.last_indexed_at = record.last_indexed_at or datetime.now(timezone.utc)


def make_session_factory(db_path: Path):
    """Create the engine and tables for `db_path` and return (engine, sessionmaker)."""
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
    return engine, SessionLocal
