"""JSON metadata store: what has been indexed, and with which content hash."""

from __future__ import annotations

import json
import logging
import os
import stat
import tempfile
import time
from pathlib import Path
from typing import Dict, Iterator, List

from semindex.errors import DimensionMismatchError, StorageError
from semindex.models import SCHEMA_VERSION, DocumentRecord, IndexMetadata

LOGGER = logging.getLogger(__name__)

# mkstemp creates 0600 files; a fresh metadata file gets the usual mode instead.
DEFAULT_FILE_MODE = 0o644


class MetadataStore:
    """Durable mapping from document id to its last indexed state.

    Mutations only touch memory and mark the store dirty; `persist` is the
    single point where the file on disk changes.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._records: Dict[str, DocumentRecord] = {}
        self._dimension: int | None = None
        self._model_name: str | None = None
        self._last_updated: float | None = None
        self._dirty = False

    def load(self) -> "MetadataStore":
        """Read persisted metadata, falling back to an empty store on any failure."""
        self._records = {}
        self._dimension = None
        self._model_name = None
        self._last_updated = None
        self._dirty = False

        if not self.path.exists():
            LOGGER.debug("No metadata at %s, starting empty", self.path)
            return self

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            metadata = IndexMetadata.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            LOGGER.warning("Failed to load index metadata from %s (%s); starting empty", self.path, exc)
            return self

        if metadata.version > SCHEMA_VERSION:
            LOGGER.debug(
                "Metadata %s has schema version %s, newer than %s; unknown fields ignored",
                self.path,
                metadata.version,
                SCHEMA_VERSION,
            )
        for record in metadata.documents:
            self._records[record.id] = record
        self._dimension = metadata.dimension
        self._model_name = metadata.model_name
        self._last_updated = metadata.last_updated
        return self

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def dimension(self) -> int | None:
        return self._dimension

    @property
    def model_name(self) -> str | None:
        """Embedding model the stored vectors were produced with."""
        return self._model_name

    def set_model_name(self, model_name: str) -> None:
        if self._model_name != model_name:
            self._model_name = model_name
            self._dirty = True

    @property
    def last_updated(self) -> float | None:
        return self._last_updated

    def set_dimension(self, dimension: int) -> None:
        if self._dimension is None:
            self._dimension = dimension
            self._dirty = True
        elif self._dimension != dimension:
            raise DimensionMismatchError(self._dimension, dimension, source="metadata")

    def get(self, doc_id: str) -> DocumentRecord | None:
        return self._records.get(doc_id)

    def upsert(self, record: DocumentRecord) -> None:
        # dict assignment keeps the original position for an existing key
        self._records[record.id] = record
        self._dirty = True

    def remove(self, doc_id: str) -> bool:
        if self._records.pop(doc_id, None) is None:
            return False
        self._dirty = True
        return True

    def ids(self) -> List[str]:
        return list(self._records)

    def records(self) -> List[DocumentRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._records

    def __iter__(self) -> Iterator[DocumentRecord]:
        return iter(self.records())

    def snapshot(self) -> IndexMetadata:
        return IndexMetadata(
            documents=self.records(),
            dimension=self._dimension,
            model_name=self._model_name,
            version=SCHEMA_VERSION,
            last_updated=self._last_updated,
        )

    def _file_mode(self) -> int:
        try:
            return stat.S_IMODE(os.stat(self.path).st_mode)
        except FileNotFoundError:
            return DEFAULT_FILE_MODE

    def persist(self, *, force: bool = False) -> bool:
        """Atomically write the full metadata set. Returns False when clean."""
        if not self._dirty and not force:
            return False

        metadata = self.snapshot()
        metadata.last_updated = time.time()
        payload = json.dumps(metadata.to_dict(), indent=2, ensure_ascii=False)

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
            )
        except OSError as exc:
            raise StorageError(self.path, exc) from exc

        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, self._file_mode())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StorageError(self.path, exc) from exc

        self._last_updated = metadata.last_updated
        self._dirty = False
        LOGGER.debug("Persisted %d document records to %s", len(self._records), self.path)
        return True
