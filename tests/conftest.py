"""Shared fixtures: a deterministic in-process embedding provider and index parts."""

from __future__ import annotations

import re
import threading
from pathlib import Path
from typing import Dict, List

import numpy as np
import pytest

from semindex.embedding.encoder import EmbeddingClient
from semindex.errors import ProviderUnavailable
from semindex.index.indexer import Indexer
from semindex.index.lock import IndexLock
from semindex.index.metadata import MetadataStore
from semindex.index.search import Searcher
from semindex.index.storage import SQLiteVectorBackend


class BagOfWordsProvider:
    """Maps each distinct word to its own axis; texts sharing words end up close."""

    name = "bag-of-words"

    def __init__(self, dimension: int = 32) -> None:
        self.dimension = dimension
        self.vocabulary: Dict[str, int] = {}
        self.calls: List[str] = []
        self.fail_on: set[str] = set()
        self.block_on: set[str] = set()
        self.release = threading.Event()
        self._lock = threading.Lock()

    def embed(self, text: str) -> List[float]:
        with self._lock:
            self.calls.append(text)
        if text in self.block_on:
            self.release.wait(timeout=10)
        if text in self.fail_on:
            raise ProviderUnavailable("simulated outage")

        vector = np.zeros(self.dimension, dtype="float32")
        for token in re.findall(r"\w+", text.lower()):
            with self._lock:
                axis = self.vocabulary.setdefault(token, len(self.vocabulary) % self.dimension)
            vector[axis] += 1.0
        norm = float(np.linalg.norm(vector))
        if norm:
            vector /= norm
        return vector.tolist()


@pytest.fixture
def provider():
    fake = BagOfWordsProvider()
    yield fake
    fake.release.set()


@pytest.fixture
def client(provider):
    return EmbeddingClient(provider)


@pytest.fixture
def store(tmp_path: Path) -> MetadataStore:
    return MetadataStore(tmp_path / "metadata.json").load()


@pytest.fixture
def backend(tmp_path: Path):
    vectors = SQLiteVectorBackend(tmp_path / "embeddings.db")
    yield vectors
    vectors.close()


@pytest.fixture
def lock() -> IndexLock:
    return IndexLock()


@pytest.fixture
def indexer(client, store, backend, lock) -> Indexer:
    return Indexer(client, store, backend, lock=lock, batch_size=10)


@pytest.fixture
def searcher(client, store, backend, lock) -> Searcher:
    return Searcher(client, store, backend, lock=lock, preview_chars=1000)
