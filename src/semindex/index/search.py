"""Semantic search interface."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List

from semindex.embedding.encoder import EmbeddingClient
from semindex.errors import IndexNotBuilt
from semindex.index.lock import IndexLock
from semindex.index.metadata import MetadataStore
from semindex.index.storage import VectorBackend
from semindex.utils.text import truncate

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SearchResult:
    id: str
    path: Path
    score: float
    preview: str
    last_modified: float


class Searcher:
    """High-level API to query the vector backend.

    ``score`` is the backend distance, so lower means closer.
    """

    def __init__(
        self,
        client: EmbeddingClient,
        store: MetadataStore,
        backend: VectorBackend,
        *,
        lock: IndexLock | None = None,
        preview_chars: int = 1000,
    ) -> None:
        self.client = client
        self.store = store
        self.backend = backend
        self.lock = lock or IndexLock()
        self.preview_chars = preview_chars

    def search(
        self, query: str, *, top_k: int = 5, timeout: float | None = None
    ) -> List[SearchResult]:
        """Return the ``top_k`` closest documents to ``query``.

        ``timeout`` bounds the wait for the index lock; `IndexBusyError` is
        raised when a batch is still being applied after that long.
        """
        with self.lock.acquire(timeout):
            if len(self.backend) == 0:
                raise IndexNotBuilt("The index is empty. Build it before searching.")

        # The query is embedded without the lock so a slow provider never
        # stalls a running reconcile.
        embedding = self.client.embed_query(query)

        with self.lock.acquire(timeout):
            count = len(self.backend)
            if count == 0:
                raise IndexNotBuilt("The index is empty. Build it before searching.")
            top_k = max(1, min(top_k, count))
            hits = self.backend.query(embedding, top_k)

            results: List[SearchResult] = []
            for key, distance in hits:
                record = self.store.get(key)
                if record is None:
                    LOGGER.warning("Vector %s has no metadata record (index drift); skipped", key)
                    continue
                results.append(
                    SearchResult(
                        id=record.id,
                        path=Path(record.id),
                        score=distance,
                        preview=truncate(record.content_snapshot, self.preview_chars),
                        last_modified=record.last_modified,
                    )
                )
        return results
