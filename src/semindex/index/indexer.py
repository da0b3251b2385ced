"""Incremental indexing pipeline."""

from __future__ import annotations

import functools
import logging
import math
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence, Tuple

import numpy as np

from semindex.embedding.encoder import EmbeddingClient
from semindex.errors import (
    ConfigurationError,
    DimensionMismatchError,
    DriftError,
    EmbeddingTimeout,
    ProviderError,
)
from semindex.index.lock import IndexLock
from semindex.index.metadata import MetadataStore
from semindex.index.storage import VectorBackend
from semindex.models import DocumentRecord
from semindex.utils.text import content_hash, truncate

LOGGER = logging.getLogger(__name__)

# (id, content, content_hash)
_Pending = Tuple[str, str, str]


@dataclass(slots=True)
class ReconcileReport:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    removed: int = 0
    oversized: int = 0
    repaired: int = 0
    failures: Dict[str, str] = field(default_factory=dict)
    processed: List[str] = field(default_factory=list)

    def increment(self, status: str, doc_id: str) -> None:
        if status == "inserted":
            self.inserted += 1
        elif status == "updated":
            self.updated += 1
        elif status == "unchanged":
            self.unchanged += 1
        elif status == "oversized":
            self.oversized += 1
        else:
            raise ValueError(f"Unknown status {status!r}")
        self.processed.append(doc_id)

    def record_failure(self, doc_id: str, reason: str) -> None:
        self.failures[doc_id] = reason
        self.processed.append(doc_id)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def succeeded(self) -> int:
        return self.inserted + self.updated

    def summary(self) -> str:
        text = f"{self.succeeded} succeeded, {self.failed} failed"
        if self.failures:
            reasons = "; ".join(f"{doc_id}: {reason}" for doc_id, reason in self.failures.items())
            text += f" ({reasons})"
        return text


@dataclass(slots=True)
class DriftReport:
    missing_vectors: List[str] = field(default_factory=list)
    orphan_vectors: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.missing_vectors and not self.orphan_vectors


class _CallClock:
    """Tracks when each embedding call of a batch started.

    A call expires once it has run for the timeout without the batch making
    progress. Calls still queued behind a provider that serializes its work
    are measured from the last completed call, never from batch submission,
    and a call sleeping before a retry does not expire at all.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started: Dict[str, float] = {}
        self._last_progress = time.monotonic()

    def track(self, doc_id: str, active: bool) -> None:
        with self._lock:
            self._started[doc_id] = time.monotonic() if active else math.inf

    def finish(self) -> None:
        with self._lock:
            self._last_progress = time.monotonic()

    def expires_at(self, doc_id: str, timeout: float) -> float:
        with self._lock:
            started = self._started.get(doc_id, self._last_progress)
            return max(started, self._last_progress) + timeout


class Indexer:
    """Brings the metadata store and vector backend in line with a corpus.

    Documents are keyed by id everywhere; the backend is never addressed by
    position. All mutation happens under the shared `IndexLock`.
    """

    def __init__(
        self,
        client: EmbeddingClient,
        store: MetadataStore,
        backend: VectorBackend,
        *,
        lock: IndexLock | None = None,
        batch_size: int = 10,
        max_document_chars: int = 100_000,
        snapshot_chars: int | None = None,
        embed_timeout: float | None = None,
        model_name: str | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.client = client
        self.store = store
        self.backend = backend
        self.lock = lock or IndexLock()
        self.batch_size = batch_size
        self.max_document_chars = max_document_chars
        self.snapshot_chars = snapshot_chars
        self.embed_timeout = embed_timeout
        self.model_name = model_name

    def reconcile(
        self, documents: Iterable[Tuple[str, str]], *, full: bool = True
    ) -> ReconcileReport:
        """Index new and changed documents; with ``full`` also drop absent ones.

        Only one reconcile may run per index at a time; a second one raises
        `IndexBusyError` right away. Embedding happens outside the shared
        lock, so searches keep being served while a batch is in flight and
        only wait for the short step that applies it.
        """
        corpus = list(documents)
        seen: set[str] = set()
        for doc_id, _ in corpus:
            if doc_id in seen:
                raise ValueError(f"Duplicate document id in corpus: {doc_id}")
            seen.add(doc_id)

        report = ReconcileReport()
        with self.lock.writer():
            with self.lock.acquire():
                self._check_dimensions()
                structural_change = self._repair_drift(report)
                pending = self._plan(corpus, report)
                if report.removed:
                    structural_change = True
                    self.store.persist()

            total_batches = math.ceil(len(pending) / self.batch_size)
            for number, start in enumerate(range(0, len(pending), self.batch_size), start=1):
                batch = pending[start : start + self.batch_size]
                vectors, failures = self._embed_batch(batch)
                with self.lock.acquire():
                    if self._apply_batch(batch, vectors, failures, report):
                        structural_change = True
                    self.store.persist()
                LOGGER.info("Processed batch %d/%d", number, total_batches)

            with self.lock.acquire():
                if full:
                    for doc_id in self.store.ids():
                        if doc_id not in seen and self._drop(doc_id):
                            LOGGER.info("Removed %s (no longer in corpus)", doc_id)
                            report.removed += 1
                            structural_change = True

                self.store.persist()
                if structural_change:
                    self.backend.rebuild()

        LOGGER.info(
            "Reconcile finished: %s; %d unchanged, %d removed, %d oversized",
            report.summary(),
            report.unchanged,
            report.removed,
            report.oversized,
        )
        return report

    def verify(self, *, strict: bool = False) -> DriftReport:
        """Compare store ids with backend keys without changing anything."""
        with self.lock.acquire():
            drift = self._diff()
        if not drift.clean:
            LOGGER.warning(
                "Index drift detected: %d record(s) without vector, %d orphan vector(s)",
                len(drift.missing_vectors),
                len(drift.orphan_vectors),
            )
            if strict:
                raise DriftError(drift.missing_vectors, drift.orphan_vectors)
        return drift

    def _check_dimensions(self) -> None:
        store_dim = self.store.dimension
        backend_dim = self.backend.dimension
        if store_dim is not None and backend_dim is not None and store_dim != backend_dim:
            raise DimensionMismatchError(store_dim, backend_dim, source="vector index")
        known = store_dim if store_dim is not None else backend_dim
        if known is not None:
            self.client.expect_dimension(known)

    def _diff(self) -> DriftReport:
        store_ids = self.store.ids()
        backend_keys = self.backend.keys()
        store_set = set(store_ids)
        backend_set = set(backend_keys)
        return DriftReport(
            missing_vectors=[doc_id for doc_id in store_ids if doc_id not in backend_set],
            orphan_vectors=[key for key in backend_keys if key not in store_set],
        )

    def _repair_drift(self, report: ReconcileReport) -> bool:
        drift = self._diff()
        if drift.clean:
            return False
        LOGGER.warning(
            "Repairing index drift: %d record(s) without vector, %d orphan vector(s)",
            len(drift.missing_vectors),
            len(drift.orphan_vectors),
        )
        with self.backend.transaction():
            for key in drift.orphan_vectors:
                self.backend.remove(key)
        # Records without a vector are forgotten so they get embedded again.
        for doc_id in drift.missing_vectors:
            self.store.remove(doc_id)
        self.store.persist()
        report.repaired = len(drift.missing_vectors) + len(drift.orphan_vectors)
        return True

    def _drop(self, doc_id: str) -> bool:
        removed_vector = self.backend.remove(doc_id)
        removed_record = self.store.remove(doc_id)
        return removed_vector or removed_record

    def _plan(
        self, corpus: Sequence[Tuple[str, str]], report: ReconcileReport
    ) -> List[_Pending]:
        """Split the corpus into documents to embed, skipping unchanged and oversized ones."""
        pending: List[_Pending] = []
        for doc_id, content in corpus:
            if len(content) > self.max_document_chars:
                LOGGER.info("Skipping large document: %s (%d chars)", doc_id, len(content))
                report.increment("oversized", doc_id)
                if self._drop(doc_id):
                    report.removed += 1
                continue

            digest = content_hash(content)
            existing = self.store.get(doc_id)
            if existing is not None and existing.content_hash == digest:
                report.increment("unchanged", doc_id)
                continue
            pending.append((doc_id, content, digest))
        return pending

    def _embed_one(self, doc_id: str, content: str, clock: _CallClock) -> np.ndarray:
        try:
            return self.client.embed(content, on_call=functools.partial(clock.track, doc_id))
        finally:
            clock.finish()

    def _embed_batch(
        self, batch: Sequence[_Pending]
    ) -> Tuple[Dict[str, np.ndarray], Dict[str, str]]:
        vectors: Dict[str, np.ndarray] = {}
        failures: Dict[str, str] = {}
        fatal: ConfigurationError | None = None
        timeout = self.embed_timeout

        clock = _CallClock()
        executor = ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="semindex-embed")
        pending = {
            doc_id: executor.submit(self._embed_one, doc_id, content, clock)
            for doc_id, content, _ in batch
        }
        try:
            while pending and fatal is None:
                wait_for = None
                if timeout is not None:
                    next_expiry = min(clock.expires_at(doc_id, timeout) for doc_id in pending)
                    # Calls in a retry backoff never expire; look again once they resume.
                    wait_for = min(timeout, max(0.0, next_expiry - time.monotonic()))
                wait(list(pending.values()), timeout=wait_for, return_when=FIRST_COMPLETED)

                for doc_id, future in list(pending.items()):
                    if not future.done():
                        continue
                    del pending[doc_id]
                    try:
                        vectors[doc_id] = future.result()
                    except ConfigurationError as exc:
                        fatal = fatal or exc
                    except ProviderError as exc:
                        failures[doc_id] = f"{type(exc).__name__}: {exc}"

                if timeout is None:
                    continue
                now = time.monotonic()
                for doc_id in list(pending):
                    if clock.expires_at(doc_id, timeout) <= now:
                        pending.pop(doc_id).cancel()
                        error = EmbeddingTimeout(f"no response within {timeout:.1f}s")
                        failures[doc_id] = f"{type(error).__name__}: {error}"
        finally:
            # A hung provider call must not hold up the reconcile.
            executor.shutdown(wait=False, cancel_futures=True)

        if fatal is not None:
            raise fatal
        return vectors, failures

    def _apply_batch(
        self,
        batch: Sequence[_Pending],
        vectors: Dict[str, np.ndarray],
        failures: Dict[str, str],
        report: ReconcileReport,
    ) -> bool:
        if vectors:
            with self.backend.transaction():
                for doc_id, vector in vectors.items():
                    self.backend.add(doc_id, vector)
            if self.store.dimension is None:
                self.store.set_dimension(int(next(iter(vectors.values())).size))
            if self.model_name:
                self.store.set_model_name(self.model_name)

            indexed_at = time.time()
            for doc_id, content, digest in batch:
                if doc_id not in vectors:
                    continue
                status = "updated" if doc_id in self.store else "inserted"
                self.store.upsert(
                    DocumentRecord(
                        id=doc_id,
                        content_hash=digest,
                        last_modified=indexed_at,
                        content_snapshot=truncate(content, self.snapshot_chars),
                    )
                )
                report.increment(status, doc_id)

        for doc_id, reason in failures.items():
            LOGGER.warning("Failed to embed %s: %s", doc_id, reason)
            report.record_failure(doc_id, reason)

        return bool(vectors)
