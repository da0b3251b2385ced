"""Embedding providers and the client that enforces their contract."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

import numpy as np
import openai
from sentence_transformers import SentenceTransformer

from semindex.errors import (
    ConfigurationError,
    DimensionMismatchError,
    EmptyResponse,
    MissingCredentialsError,
    ProviderUnavailable,
    SemIndexError,
)

DEFAULT_MODEL = "openai/text-embedding-3-large"
OPENAI_PREFIX = "openai/"

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_MODEL
    api_key: str | None = None
    dimension: int | None = None
    timeout: float | None = 30.0
    max_retries: int = 0
    retry_backoff: float = 1.0
    normalize: bool = True
    batch_size: int = 16
    device: str | None = None


class EmbeddingProvider(Protocol):
    """Anything that turns one text into one vector."""

    name: str

    def embed(self, text: str) -> Sequence[float]:
        ...


class OpenAIEmbeddingProvider:
    """Remote embeddings through the OpenAI API.

    The SDK client is created lazily on the first call so that a missing API
    key only fails the operations that actually need the provider.
    """

    name = "openai"

    def __init__(self, config: EmbeddingConfig) -> None:
        self.config = config
        self.model_name = config.model_name.removeprefix(OPENAI_PREFIX)
        self._client: openai.OpenAI | None = None
        self._lock = threading.Lock()

    def _get_client(self) -> openai.OpenAI:
        with self._lock:
            if self._client is None:
                if not self.config.api_key:
                    raise MissingCredentialsError("OpenAI", "OPENAI_API_KEY")
                # Retries are handled by EmbeddingClient so they stay configurable.
                self._client = openai.OpenAI(
                    api_key=self.config.api_key,
                    timeout=self.config.timeout,
                    max_retries=0,
                )
            return self._client

    def embed(self, text: str) -> Sequence[float]:
        client = self._get_client()
        kwargs = {}
        if self.config.dimension:
            kwargs["dimensions"] = self.config.dimension
        try:
            response = client.embeddings.create(model=self.model_name, input=text, **kwargs)
        except openai.OpenAIError as exc:
            raise ProviderUnavailable(f"OpenAI embedding request failed: {exc}") from exc

        if not response.data:
            raise EmptyResponse(f"OpenAI returned no embedding for model {self.model_name}")
        return response.data[0].embedding


class SentenceTransformerProvider:
    """Thin wrapper around `SentenceTransformer` for local embeddings."""

    name = "sentence-transformers"

    def __init__(self, config: EmbeddingConfig) -> None:
        self.config = config
        self._model: SentenceTransformer | None = None
        self._lock = threading.Lock()

    def _load_model(self) -> SentenceTransformer:
        try:
            model = SentenceTransformer(self.config.model_name, device=self.config.device)
        except Exception as exc:
            raise ProviderUnavailable(
                f"Unable to load sentence-transformers model {self.config.model_name!r}: {exc}"
            ) from exc
        logger.info(
            "Loaded %s (dimension %s)",
            self.config.model_name,
            model.get_sentence_embedding_dimension(),
        )
        return model

    def embed(self, text: str) -> Sequence[float]:
        # encode() is not safe to call from several threads on one model
        with self._lock:
            if self._model is None:
                self._model = self._load_model()
            embeddings = self._model.encode(
                [text],
                batch_size=self.config.batch_size,
                show_progress_bar=False,
                convert_to_numpy=True,
                normalize_embeddings=self.config.normalize,
            )
        return embeddings[0]


def create_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """Pick a provider implementation from the model name prefix.

    ``openai/<model>`` goes to the OpenAI API, every other name is treated as
    a sentence-transformers model id.
    """
    if not config.model_name:
        raise ConfigurationError("No embedding model configured")
    if config.model_name.startswith(OPENAI_PREFIX):
        return OpenAIEmbeddingProvider(config)
    return SentenceTransformerProvider(config)


class EmbeddingClient:
    """Converts text to fixed-width float32 vectors through a provider.

    The first vector seen fixes the dimension unless one was given up front;
    any later vector of a different width raises `DimensionMismatchError`,
    which is a configuration error and never retried.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        dimension: int | None = None,
        max_retries: int = 0,
        retry_backoff: float = 1.0,
    ) -> None:
        self.provider = provider
        self.max_retries = max(0, max_retries)
        self.retry_backoff = retry_backoff
        self._dimension = dimension
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: EmbeddingConfig) -> "EmbeddingClient":
        return cls(
            create_provider(config),
            dimension=config.dimension,
            max_retries=config.max_retries,
            retry_backoff=config.retry_backoff,
        )

    @property
    def dimension(self) -> int | None:
        return self._dimension

    def expect_dimension(self, dimension: int) -> None:
        """Pin the dimension to the width an existing index was built with."""
        with self._lock:
            if self._dimension is None:
                self._dimension = dimension
            elif self._dimension != dimension:
                raise DimensionMismatchError(dimension, self._dimension, source="embedding model")

    def _call_provider(self, text: str) -> Sequence[float]:
        try:
            return self.provider.embed(text)
        except SemIndexError:
            raise
        except Exception as exc:
            name = getattr(self.provider, "name", type(self.provider).__name__)
            raise ProviderUnavailable(f"{name} embedding call failed: {exc}") from exc

    def embed(self, text: str, *, on_call: Callable[[bool], None] | None = None) -> np.ndarray:
        """Return the float32 embedding for ``text``.

        ``on_call(True)`` runs right before every provider call, retries
        included, and ``on_call(False)`` before each backoff sleep, so callers
        can time each call on its own.
        """
        attempt = 0
        while True:
            if on_call is not None:
                on_call(True)
            try:
                raw = self._call_provider(text)
                break
            except ConfigurationError:
                raise
            except ProviderUnavailable as exc:
                if attempt >= self.max_retries:
                    raise
                delay = self.retry_backoff * (2**attempt)
                attempt += 1
                logger.warning(
                    "Embedding failed (attempt %d/%d), retrying in %.1fs: %s",
                    attempt,
                    self.max_retries + 1,
                    delay,
                    exc,
                )
                if on_call is not None:
                    on_call(False)
                time.sleep(delay)
        return self._validate(raw)

    def embed_query(self, text: str) -> np.ndarray:
        """Convenience wrapper for query-side embedding."""
        return self.embed(text)

    def _validate(self, raw: Sequence[float] | None) -> np.ndarray:
        if raw is None:
            raise EmptyResponse("Provider returned no vector")
        try:
            vector = np.asarray(raw, dtype="float32").reshape(-1)
        except (TypeError, ValueError) as exc:
            raise EmptyResponse(f"Provider returned an unusable vector: {exc}") from exc
        if vector.size == 0:
            raise EmptyResponse("Provider returned an empty vector")
        if not np.all(np.isfinite(vector)):
            raise EmptyResponse("Provider returned a vector with non-finite values")

        with self._lock:
            if self._dimension is None:
                self._dimension = int(vector.size)
            elif vector.size != self._dimension:
                raise DimensionMismatchError(self._dimension, int(vector.size))
        return vector
