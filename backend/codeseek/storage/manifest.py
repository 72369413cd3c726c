"""Index manifest: which model and chunking settings produced the stored vectors."""

from __future__ import annotations

import dataclasses
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from ..utils.file_utils import atomic_write_json

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
MANIFEST_NAME = "manifest.json"


@dataclasses.dataclass
class Manifest:
    model_version: str
    dimension: int
    chunking: str = ""
    schema_version: int = SCHEMA_VERSION
    created_at: str = dataclasses.field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def matches(self, model_version: str, dimension: int, chunking: str) -> bool:
        return (
            self.schema_version == SCHEMA_VERSION
            and self.model_version == model_version
            and self.dimension == dimension
            and self.chunking == chunking
        )

    def to_dict(self) -> Dict:
        return dataclasses.asdict(self)


def read_manifest(path: Path) -> Optional[Manifest]:
    """Read the manifest, or None when absent or unreadable."""
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Manifest(
            model_version=str(data["model_version"]),
            dimension=int(data["dimension"]),
            chunking=str(data.get("chunking", "")),
            schema_version=int(data.get("schema_version", 0)),
            created_at=str(data.get("created_at", "")),
        )
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.warning(f"Unreadable manifest {path}, treating index as stale: {e}")
        return None


def write_manifest(path: Path, manifest: Manifest) -> None:
    atomic_write_json(path, manifest.to_dict())
