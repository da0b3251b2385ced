"""Tests for Indexer."""

import threading
import time
from unittest.mock import patch

import pytest

from semindex.embedding.encoder import EmbeddingClient
from semindex.errors import (
    DimensionMismatchError,
    DriftError,
    IndexBusyError,
    MissingCredentialsError,
    ProviderUnavailable,
)
from semindex.index.indexer import DriftReport, Indexer, ReconcileReport
from semindex.index.metadata import MetadataStore
from semindex.models import DocumentRecord
from semindex.utils.text import content_hash


class TestReconcileReport:
    """Test ReconcileReport tracking."""

    def test_init_defaults(self):
        """Test default initialization."""
        report = ReconcileReport()
        assert report.inserted == 0
        assert report.updated == 0
        assert report.unchanged == 0
        assert report.removed == 0
        assert report.oversized == 0
        assert report.failures == {}
        assert report.processed == []

    def test_increment_statuses(self):
        """Each known status bumps its own counter."""
        report = ReconcileReport()

        report.increment("inserted", "a")
        report.increment("updated", "b")
        report.increment("unchanged", "c")
        report.increment("oversized", "d")

        assert (report.inserted, report.updated, report.unchanged, report.oversized) == (1, 1, 1, 1)
        assert report.processed == ["a", "b", "c", "d"]
        assert report.succeeded == 2

    def test_increment_unknown_status(self):
        """Unknown statuses are a programming error."""
        with pytest.raises(ValueError):
            ReconcileReport().increment("weird", "a")

    def test_summary_lists_failures(self):
        """Summary reads 'N succeeded, M failed (reasons)'."""
        report = ReconcileReport()
        report.increment("inserted", "a")
        report.record_failure("b", "ProviderUnavailable: down")

        assert report.failed == 1
        assert report.summary() == "1 succeeded, 1 failed (b: ProviderUnavailable: down)"

    def test_drift_report_clean(self):
        assert DriftReport().clean
        assert not DriftReport(orphan_vectors=["x"]).clean


CORPUS = [
    ("a.md", "alpha document about parsers"),
    ("b.md", "beta document about caches"),
    ("c.md", "gamma document about sockets"),
]


class TestReconcile:
    """Test the incremental reconcile pipeline."""

    def test_first_run_indexes_everything(self, indexer, provider, store, backend):
        """Every new document is embedded once and stored under its id."""
        report = indexer.reconcile(CORPUS)

        assert report.inserted == 3
        assert report.failed == 0
        assert len(provider.calls) == 3
        assert store.ids() == ["a.md", "b.md", "c.md"]
        assert sorted(backend.keys()) == ["a.md", "b.md", "c.md"]
        assert store.get("a.md").content_hash == content_hash(CORPUS[0][1])
        assert store.get("a.md").content_snapshot == CORPUS[0][1]
        assert store.dimension == backend.dimension == provider.dimension

    def test_second_run_is_idempotent(self, indexer, provider, store, tmp_path):
        """Unchanged content means no embedding calls and no writes."""
        indexer.reconcile(CORPUS)
        calls_after_first = len(provider.calls)
        metadata_file = tmp_path / "metadata.json"
        before = metadata_file.read_bytes()
        last_updated = store.last_updated

        with patch.object(indexer.backend, "add") as backend_add:
            report = indexer.reconcile(CORPUS)

        assert len(provider.calls) == calls_after_first
        assert report.unchanged == 3
        assert report.succeeded == 0
        backend_add.assert_not_called()
        assert metadata_file.read_bytes() == before
        assert store.last_updated == last_updated
        assert not store.dirty

    def test_changed_removed_and_unchanged(self, indexer, provider, store, backend):
        """One change, one removal, one untouched document."""
        indexer.reconcile(CORPUS)
        provider.calls.clear()

        report = indexer.reconcile(
            [
                ("a.md", "alpha document about parsers and lexers"),
                ("c.md", "gamma document about sockets"),
            ]
        )

        assert provider.calls == ["alpha document about parsers and lexers"]
        assert report.updated == 1
        assert report.unchanged == 1
        assert report.removed == 1
        assert "b.md" not in store
        assert "b.md" not in backend.keys()
        assert store.get("a.md").content_hash == content_hash("alpha document about parsers and lexers")
        assert indexer.verify().clean

    def test_store_and_backend_match_after_reconcile(self, indexer, store, backend):
        """No orphans in either direction."""
        indexer.reconcile(CORPUS)
        indexer.reconcile(CORPUS[:2] + [("d.md", "delta")])

        assert sorted(store.ids()) == sorted(backend.keys()) == ["a.md", "b.md", "d.md"]

    def test_insertion_order_is_kept_on_update(self, indexer, store):
        indexer.reconcile(CORPUS)
        indexer.reconcile([CORPUS[0], ("b.md", "beta changed"), CORPUS[2]])

        assert store.ids() == ["a.md", "b.md", "c.md"]

    def test_partial_reconcile_keeps_absent_documents(self, indexer, store):
        """full=False never removes documents that were not passed in."""
        indexer.reconcile(CORPUS)

        report = indexer.reconcile([("d.md", "delta")], full=False)

        assert report.removed == 0
        assert store.ids() == ["a.md", "b.md", "c.md", "d.md"]

    def test_duplicate_ids_rejected(self, indexer, provider):
        with pytest.raises(ValueError, match="Duplicate"):
            indexer.reconcile([("a.md", "one"), ("a.md", "two")])
        assert provider.calls == []

    def test_one_failure_does_not_abort_batch(self, indexer, provider, searcher, store):
        """1 of 10 failing leaves the other 9 indexed and searchable."""
        corpus = [(f"doc-{i}.txt", f"document number {i} text") for i in range(10)]
        provider.fail_on.add("document number 3 text")

        report = indexer.reconcile(corpus)

        assert report.inserted == 9
        assert report.failed == 1
        assert list(report.failures) == ["doc-3.txt"]
        assert "ProviderUnavailable" in report.failures["doc-3.txt"]
        assert "doc-3.txt" not in store
        results = searcher.search("document", top_k=20)
        assert len(results) == 9
        assert "doc-3.txt" not in {result.id for result in results}

    def test_failed_update_keeps_previous_version(self, indexer, provider, store, backend):
        """A failed re-embedding leaves the old record and vector in place."""
        indexer.reconcile([("a.md", "first version")])
        provider.fail_on.add("second version")

        report = indexer.reconcile([("a.md", "second version")])

        assert report.failed == 1
        assert store.get("a.md").content_hash == content_hash("first version")
        assert backend.keys() == ["a.md"]

        provider.fail_on.clear()
        report = indexer.reconcile([("a.md", "second version")])
        assert report.updated == 1
        assert store.get("a.md").content_hash == content_hash("second version")

    def test_timeout_is_a_per_document_failure(self, client, store, backend, provider):
        """A hung provider call is abandoned after the timeout."""
        provider.block_on.add("slow document")
        indexer = Indexer(client, store, backend, embed_timeout=0.2)

        report = indexer.reconcile([("slow.md", "slow document"), ("fast.md", "fast document")])
        provider.release.set()

        assert report.inserted == 1
        assert "EmbeddingTimeout" in report.failures["slow.md"]
        assert store.ids() == ["fast.md"]

    def test_oversized_documents_are_skipped(self, client, store, backend, provider):
        """Documents over the size ceiling are excluded, not errors."""
        indexer = Indexer(client, store, backend, max_document_chars=20)
        indexer.reconcile([("small.md", "short text")])

        report = indexer.reconcile([("small.md", "short text grown far beyond the limit")])

        assert report.oversized == 1
        assert report.failed == 0
        assert report.removed == 1
        assert len(store) == 0
        assert backend.keys() == []
        assert provider.calls == ["short text"]

    def test_snapshot_is_bounded(self, client, store, backend):
        indexer = Indexer(client, store, backend, snapshot_chars=5)

        indexer.reconcile([("a.md", "abcdefghij")])

        assert store.get("a.md").content_snapshot == "abcde"

    def test_persists_after_each_batch(self, client, store, backend):
        """The store is persisted after every batch to bound loss on interruption."""
        indexer = Indexer(client, store, backend, batch_size=10)
        corpus = [(f"{i}.txt", f"text {i}") for i in range(25)]

        with patch.object(store, "persist", wraps=store.persist) as persist:
            indexer.reconcile(corpus)

        assert persist.call_count >= 3
        reloaded = MetadataStore(store.path).load()
        assert len(reloaded) == 25

    def test_dimension_change_aborts(self, indexer, store, backend, provider):
        """A provider returning another width is a fatal configuration error."""
        indexer.reconcile(CORPUS)

        provider.dimension = 16
        with pytest.raises(DimensionMismatchError):
            indexer.reconcile(CORPUS + [("d.md", "delta")])

        assert store.ids() == ["a.md", "b.md", "c.md"]
        assert "d.md" not in backend.keys()

    def test_new_client_is_pinned_to_existing_dimension(self, indexer, store, backend, provider):
        indexer.reconcile(CORPUS)
        fresh_client = EmbeddingClient(provider)

        Indexer(fresh_client, store, backend).reconcile(CORPUS)

        assert fresh_client.dimension == provider.dimension

    def test_missing_credentials_abort(self, store, backend):
        """Missing credentials stop the whole reconcile."""

        class NoKeyProvider:
            name = "openai"

            def embed(self, text):
                raise MissingCredentialsError("OpenAI", "OPENAI_API_KEY")

        indexer = Indexer(EmbeddingClient(NoKeyProvider()), store, backend)

        with pytest.raises(MissingCredentialsError):
            indexer.reconcile(CORPUS)
        assert len(store) == 0


class TestDrift:
    """Test drift repair and verification."""

    def test_reconcile_repairs_drift(self, indexer, store, backend, provider):
        indexer.reconcile(CORPUS)
        backend.add("ghost.md", [0.0] * provider.dimension)
        backend.remove("b.md")

        report = indexer.reconcile(CORPUS)

        assert report.repaired == 2
        assert report.inserted == 1  # b.md embedded again
        assert "ghost.md" not in backend.keys()
        assert sorted(backend.keys()) == sorted(store.ids())

    def test_verify_reports_without_changing(self, indexer, store, backend):
        indexer.reconcile(CORPUS)
        store.upsert(DocumentRecord("lost.md", "hash", 0.0, "lost"))

        drift = indexer.verify()

        assert drift.missing_vectors == ["lost.md"]
        assert drift.orphan_vectors == []
        assert "lost.md" in store

    def test_verify_strict_raises(self, indexer, backend, provider):
        indexer.reconcile(CORPUS)
        backend.add("ghost.md", [0.0] * provider.dimension)

        with pytest.raises(DriftError) as excinfo:
            indexer.verify(strict=True)
        assert excinfo.value.orphan_vectors == ["ghost.md"]


class SerialProvider:
    """Answers one call at a time after a fixed delay, like a local model behind a lock."""

    name = "serial"

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def embed(self, text):
        with self._lock:
            self.calls.append(text)
            time.sleep(self.delay)
            return [float(len(text)), 1.0]


class FlakyProvider:
    """Fails the first call, then answers immediately."""

    name = "flaky"

    def __init__(self) -> None:
        self.calls = 0

    def embed(self, text):
        self.calls += 1
        if self.calls == 1:
            raise ProviderUnavailable("busy")
        return [1.0, 0.0]


class TestEmbeddingTimeout:
    """The timeout bounds each provider call, not the batch."""

    def test_queued_calls_are_not_charged_for_waiting(self, store, backend):
        """Calls waiting behind a serial provider do not time out."""
        provider = SerialProvider(delay=0.15)
        indexer = Indexer(EmbeddingClient(provider), store, backend, embed_timeout=0.4)
        corpus = [(f"d{i}", f"document {i}") for i in range(5)]

        report = indexer.reconcile(corpus)

        assert report.failures == {}
        assert report.inserted == 5
        assert len(provider.calls) == 5

    def test_retry_backoff_does_not_count_against_the_call(self, store, backend):
        provider = FlakyProvider()
        client = EmbeddingClient(provider, max_retries=1, retry_backoff=0.5)
        indexer = Indexer(client, store, backend, embed_timeout=0.3)

        report = indexer.reconcile([("a.md", "alpha")])

        assert report.failures == {}
        assert report.inserted == 1
        assert provider.calls == 2


def _wait_for_call(provider, text: str, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while text not in provider.calls and time.monotonic() < deadline:
        time.sleep(0.01)
    assert text in provider.calls


class TestConcurrentAccess:
    """Searches and reconciles running against one index."""

    def test_search_is_served_while_a_batch_is_embedding(self, indexer, searcher, provider, store):
        indexer.reconcile([("a.md", "hello world"), ("b.md", "goodbye world")])
        provider.block_on.add("slow document")
        corpus = [("a.md", "hello world"), ("b.md", "goodbye world"), ("slow.md", "slow document")]
        worker = threading.Thread(target=indexer.reconcile, args=(corpus,))
        worker.start()
        try:
            _wait_for_call(provider, "slow document")

            started = time.monotonic()
            results = searcher.search("hello", top_k=1)
            elapsed = time.monotonic() - started
        finally:
            provider.release.set()
            worker.join(timeout=10)

        assert elapsed < 1.0
        assert results[0].id == "a.md"
        assert "slow.md" in store

    def test_second_reconcile_is_rejected(self, indexer, provider, store):
        """Only one reconcile may run per index; the other fails fast."""
        provider.block_on.add("slow document")
        worker = threading.Thread(target=indexer.reconcile, args=([("slow.md", "slow document")],))
        worker.start()
        try:
            _wait_for_call(provider, "slow document")

            with pytest.raises(IndexBusyError):
                indexer.reconcile([("other.md", "other text")])
        finally:
            provider.release.set()
            worker.join(timeout=10)

        assert store.ids() == ["slow.md"]
        assert indexer.reconcile([("slow.md", "slow document")]).unchanged == 1

    def test_model_name_is_recorded_with_the_first_vectors(self, client, store, backend):
        indexer = Indexer(client, store, backend, model_name="local-model")
        assert store.model_name is None

        indexer.reconcile([("a.md", "alpha")])

        assert store.model_name == "local-model"
        assert MetadataStore(store.path).load().model_name == "local-model"
