"""Wiring of store, backend, client and pipelines for one index directory."""

from __future__ import annotations

import dataclasses
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Tuple

from semindex.config import AppConfig
from semindex.embedding.encoder import DEFAULT_MODEL, EmbeddingClient
from semindex.errors import ConfigurationError, StorageError
from semindex.index.indexer import DriftReport, Indexer, ReconcileReport
from semindex.index.lock import IndexLock
from semindex.index.metadata import MetadataStore
from semindex.index.search import Searcher, SearchResult
from semindex.index.storage import SQLiteVectorBackend

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class IndexStatsView:
    document_count: int
    vector_count: int
    dimension: int | None
    metric: str
    last_updated: float | None
    index_dir: Path
    model_name: str | None = None


class SemanticIndex:
    """One index directory: ``metadata.json`` plus the ``embeddings.db`` vectors.

    The embedding model is part of the index. It is recorded in the metadata
    the first time vectors are written; a later open without an explicit
    model uses the recorded one, and an explicit model that disagrees with a
    populated index is a `ConfigurationError`.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        client: EmbeddingClient | None = None,
        base_dir: Path | None = None,
    ) -> None:
        self.config = dataclasses.replace(config, index_dir=config.resolve_index_dir(base_dir))
        self.index_dir = Path(self.config.index_dir)
        try:
            self.index_dir.mkdir(parents=True, exist_ok=True)
            self.backend = SQLiteVectorBackend(self.config.vectors_path, metric=config.metric)
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(self.index_dir, exc) from exc

        self.store = MetadataStore(self.config.metadata_path).load()
        try:
            self.config.model_name = self._resolve_model(config.model_name)
        except ConfigurationError:
            self.backend.close()
            raise
        self.client = client or EmbeddingClient.from_config(self.config.embedding_config())
        self.lock = IndexLock(str(self.index_dir))
        self.indexer = Indexer(
            self.client,
            self.store,
            self.backend,
            lock=self.lock,
            batch_size=config.batch_size,
            max_document_chars=config.max_document_chars,
            snapshot_chars=config.snapshot_chars,
            embed_timeout=config.embed_timeout,
            model_name=self.config.model_name,
        )
        self.searcher = Searcher(
            self.client,
            self.store,
            self.backend,
            lock=self.lock,
            preview_chars=config.preview_chars,
        )

    def _resolve_model(self, requested: str | None) -> str:
        recorded = self.store.model_name
        if requested is None:
            return recorded or DEFAULT_MODEL
        populated = len(self.store) > 0 or len(self.backend) > 0
        if recorded is not None and recorded != requested and populated:
            raise ConfigurationError(
                f"Index {self.index_dir} was built with {recorded!r}; "
                f"refusing to use {requested!r}. Rebuild into a new directory to switch models."
            )
        return requested

    @property
    def model_name(self) -> str:
        return self.config.model_name

    @classmethod
    def from_config(cls, config: AppConfig, **kwargs) -> "SemanticIndex":
        return cls(config, **kwargs)

    def __enter__(self) -> "SemanticIndex":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.backend.close()

    def reconcile(
        self, documents: Iterable[Tuple[str, str]], *, full: bool = True
    ) -> ReconcileReport:
        return self.indexer.reconcile(documents, full=full)

    def search(
        self, query: str, *, top_k: int = 5, timeout: float | None = None
    ) -> List[SearchResult]:
        return self.searcher.search(query, top_k=top_k, timeout=timeout)

    def verify(self, *, strict: bool = False) -> DriftReport:
        return self.indexer.verify(strict=strict)

    def stats(self) -> IndexStatsView:
        with self.lock.acquire():
            return IndexStatsView(
                document_count=len(self.store),
                vector_count=len(self.backend),
                dimension=self.store.dimension or self.backend.dimension,
                metric=self.backend.metric,
                last_updated=self.store.last_updated,
                index_dir=self.index_dir,
                model_name=self.store.model_name,
            )
