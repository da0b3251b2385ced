"""Exception hierarchy for the semantic index.

Configuration errors are fatal and abort the running operation. Provider
errors are scoped to a single document and get collected into the reconcile
report instead of propagating.
"""

from __future__ import annotations


class SemIndexError(Exception):
    """Base error for all semindex failures."""


class ConfigurationError(SemIndexError):
    """Invalid or incomplete configuration; aborts the whole operation."""


class DimensionMismatchError(ConfigurationError):
    """An embedding width differs from the width the index was built with."""

    def __init__(self, expected: int, actual: int, *, source: str = "embedding") -> None:
        super().__init__(
            f"{source} has dimension {actual}, index expects {expected}; "
            "the embedding model probably changed, rebuild the index from scratch"
        )
        self.expected = expected
        self.actual = actual


class ProviderError(SemIndexError):
    """An embedding call failed for one document."""


class ProviderUnavailable(ProviderError):
    """The embedding provider could not be reached or rejected the call."""


class MissingCredentialsError(ConfigurationError, ProviderUnavailable):
    """No credentials are configured for a provider that requires them."""

    def __init__(self, provider: str, variable: str) -> None:
        super().__init__(f"{provider} API key not configured; set {variable}")
        self.provider = provider
        self.variable = variable


class EmptyResponse(ProviderError):
    """The provider answered without a usable vector."""


class EmbeddingTimeout(ProviderError):
    """An embedding call did not finish within the configured timeout."""


class StorageError(SemIndexError):
    """Reading or writing persisted index state failed."""

    def __init__(self, path: object, reason: object) -> None:
        super().__init__(f"Storage failure at {path}: {reason}")
        self.path = path


class IndexNotBuilt(SemIndexError):
    """A query was issued before any successful build."""


class IndexBusyError(SemIndexError):
    """The index writer lock could not be acquired in time."""


class DriftError(SemIndexError):
    """Metadata store and vector backend disagree about the indexed ids."""

    def __init__(self, missing_vectors: list[str], orphan_vectors: list[str]) -> None:
        super().__init__(
            f"Index drift: {len(missing_vectors)} record(s) without vector, "
            f"{len(orphan_vectors)} vector(s) without record"
        )
        self.missing_vectors = missing_vectors
        self.orphan_vectors = orphan_vectors
