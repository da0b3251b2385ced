"""Core semindex data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

SCHEMA_VERSION = 1


@dataclass(slots=True)
class DocumentRecord:
    """Last indexed state of a single document."""

    id: str
    content_hash: str
    last_modified: float
    content_snapshot: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content_hash": self.content_hash,
            "last_modified": self.last_modified,
            "content_snapshot": self.content_snapshot,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentRecord":
        # Unknown keys written by newer versions are ignored.
        return cls(
            id=str(data["id"]),
            content_hash=str(data["content_hash"]),
            last_modified=float(data.get("last_modified", 0.0)),
            content_snapshot=str(data.get("content_snapshot", "")),
        )


@dataclass(slots=True)
class IndexMetadata:
    """Persisted collection of document records."""

    documents: List[DocumentRecord] = field(default_factory=list)
    dimension: int | None = None
    model_name: str | None = None
    version: int = SCHEMA_VERSION
    last_updated: float | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "dimension": self.dimension,
            "model_name": self.model_name,
            "last_updated": self.last_updated,
            "documents": [doc.to_dict() for doc in self.documents],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexMetadata":
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
        dimension = data.get("dimension")
        last_updated = data.get("last_updated")
        model_name = data.get("model_name")
        return cls(
            documents=[DocumentRecord.from_dict(item) for item in data.get("documents", [])],
            dimension=int(dimension) if dimension is not None else None,
            model_name=str(model_name) if model_name else None,
            version=int(data.get("version", SCHEMA_VERSION)),
            last_updated=float(last_updated) if last_updated is not None else None,
        )
