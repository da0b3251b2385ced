"""SQLite-backed vector store keyed by document id."""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Protocol, Sequence, Tuple

import numpy as np

from semindex.errors import ConfigurationError, DimensionMismatchError

METRICS = ("l2", "cosine")


class VectorBackend(Protocol):
    """Nearest-neighbor backend addressed by explicit string keys."""

    dimension: int | None
    metric: str

    def add(self, key: str, vector: Sequence[float] | np.ndarray) -> None:
        ...

    def remove(self, key: str) -> bool:
        ...

    def query(self, vector: Sequence[float] | np.ndarray, top_k: int) -> List[Tuple[str, float]]:
        ...

    def rebuild(self) -> None:
        ...

    def keys(self) -> List[str]:
        ...

    def __len__(self) -> int:
        ...

    def transaction(self):  # pragma: no cover - protocol
        ...


@dataclass(slots=True)
class _Matrix:
    """Materialised vectors plus the key <-> row translation table."""

    keys: List[str] = field(default_factory=list)
    positions: Dict[str, int] = field(default_factory=dict)
    vectors: np.ndarray = field(default_factory=lambda: np.zeros((0, 0), dtype="float32"))


class SQLiteVectorBackend:
    """Persistence layer for document embeddings.

    Vectors live in SQLite as float32 blobs keyed by document id. Queries run
    against an in-memory matrix whose row order is private to this class;
    callers only ever see keys. Any add or remove drops the matrix and the
    next query (or an explicit `rebuild`) materialises it again.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        dimension: int | None = None,
        metric: str | None = None,
    ) -> None:
        if metric is not None and metric not in METRICS:
            raise ConfigurationError(f"Unknown metric {metric!r}; expected one of {METRICS}")
        self.db_path = Path(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._in_transaction = False
        self._matrix: _Matrix | None = None
        self._matrix_lock = threading.Lock()
        self._ensure_schema()
        self.dimension = self._read_meta_int("dimension")
        self.metric = self._init_metric(metric)
        if dimension is not None:
            self._init_dimension(dimension)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        if self._in_transaction:
            yield self._conn
            return
        self._in_transaction = True
        try:
            yield self._conn
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            self.dimension = self._read_meta_int("dimension")
            self._invalidate()
            raise
        finally:
            self._in_transaction = False

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS vectors (
                    key TEXT PRIMARY KEY,
                    embedding BLOB NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

    def _read_meta(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def _read_meta_int(self, key: str) -> int | None:
        value = self._read_meta(key)
        return int(value) if value is not None else None

    def _write_meta(self, key: str, value: object) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO meta(key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, str(value)),
            )

    def _init_metric(self, requested: str | None) -> str:
        stored = self._read_meta("metric")
        if stored is None:
            metric = requested or "l2"
            self._write_meta("metric", metric)
            return metric
        if requested is not None and requested != stored:
            raise ConfigurationError(
                f"Vector index {self.db_path} was built with metric {stored!r}, "
                f"not {requested!r}; rebuild it to change the metric"
            )
        return stored

    def _init_dimension(self, dimension: int) -> None:
        if self.dimension is None:
            self._write_meta("dimension", dimension)
            self.dimension = dimension
        elif self.dimension != dimension:
            raise DimensionMismatchError(self.dimension, dimension, source="vector index")

    def _invalidate(self) -> None:
        with self._matrix_lock:
            self._matrix = None

    def add(self, key: str, vector: Sequence[float] | np.ndarray) -> None:
        """Insert or replace the vector stored under ``key``."""
        array = np.asarray(vector, dtype="float32").reshape(-1)
        with self.transaction() as conn:
            self._init_dimension(int(array.size))
            conn.execute(
                """
                INSERT INTO vectors(key, embedding) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    embedding = excluded.embedding,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, sqlite3.Binary(array.tobytes())),
            )
        self._invalidate()

    def remove(self, key: str) -> bool:
        with self.transaction() as conn:
            deleted = conn.execute("DELETE FROM vectors WHERE key = ?", (key,)).rowcount
        if deleted:
            self._invalidate()
        return bool(deleted)

    def keys(self) -> List[str]:
        return [row["key"] for row in self._conn.execute("SELECT key FROM vectors ORDER BY rowid")]

    def __len__(self) -> int:
        return int(self._conn.execute("SELECT COUNT(*) FROM vectors").fetchone()[0])

    def __contains__(self, key: object) -> bool:
        row = self._conn.execute("SELECT 1 FROM vectors WHERE key = ?", (key,)).fetchone()
        return row is not None

    def rebuild(self) -> None:
        """Materialise the query matrix and key table from the database."""
        rows = self._conn.execute("SELECT key, embedding FROM vectors ORDER BY rowid").fetchall()
        keys = [row["key"] for row in rows]
        if rows:
            vectors = np.vstack([np.frombuffer(row["embedding"], dtype="float32") for row in rows])
            if self.metric == "cosine":
                norms = np.linalg.norm(vectors, axis=1, keepdims=True)
                vectors = vectors / np.where(norms == 0, 1.0, norms)
        else:
            vectors = np.zeros((0, self.dimension or 0), dtype="float32")
        matrix = _Matrix(
            keys=keys,
            positions={key: idx for idx, key in enumerate(keys)},
            vectors=vectors,
        )
        with self._matrix_lock:
            self._matrix = matrix

    def _current_matrix(self) -> _Matrix:
        with self._matrix_lock:
            matrix = self._matrix
        if matrix is None:
            self.rebuild()
            with self._matrix_lock:
                matrix = self._matrix
        assert matrix is not None
        return matrix

    def position_of(self, key: str) -> int | None:
        """Row of ``key`` in the current matrix (private ordering, for diagnostics)."""
        return self._current_matrix().positions.get(key)

    def query(self, vector: Sequence[float] | np.ndarray, top_k: int) -> List[Tuple[str, float]]:
        """Return up to ``top_k`` ``(key, distance)`` pairs, nearest first."""
        matrix = self._current_matrix()
        if not matrix.keys or top_k < 1:
            return []

        query = np.asarray(vector, dtype="float32").reshape(-1)
        if query.size != matrix.vectors.shape[1]:
            raise DimensionMismatchError(int(matrix.vectors.shape[1]), int(query.size), source="query")

        if self.metric == "cosine":
            norm = float(np.linalg.norm(query))
            if norm:
                query = query / norm
            distances = 1.0 - matrix.vectors @ query
        else:
            diff = matrix.vectors - query
            distances = np.einsum("ij,ij->i", diff, diff)

        k = min(top_k, len(distances))
        if k < len(distances):
            top_indices = np.argpartition(distances, k - 1)[:k]
            top_indices = top_indices[np.argsort(distances[top_indices], kind="stable")]
        else:
            top_indices = np.argsort(distances, kind="stable")

        return [(matrix.keys[idx], float(distances[idx])) for idx in top_indices]
