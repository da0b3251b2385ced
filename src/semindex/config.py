"""Application configuration defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from semindex.embedding.encoder import DEFAULT_MODEL, EmbeddingConfig

DEFAULT_INDEX_DIR = Path(".embedding-index")
METADATA_FILENAME = "metadata.json"
VECTORS_FILENAME = "embeddings.db"
API_KEY_ENV = "OPENAI_API_KEY"


@dataclass(slots=True)
class AppConfig:
    index_dir: Path | None = None
    # None defers to the model recorded in the index, then DEFAULT_MODEL.
    model_name: str | None = None
    api_key: str | None = None
    metric: str | None = None
    batch_size: int = 10
    max_document_chars: int = 100_000
    snapshot_chars: int | None = None
    preview_chars: int = 1000
    embed_timeout: float | None = 30.0
    max_retries: int = 0

    def __post_init__(self) -> None:
        if self.index_dir is None:
            self.index_dir = DEFAULT_INDEX_DIR
        if self.api_key is None:
            self.api_key = os.environ.get(API_KEY_ENV) or None
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")

    def resolve_index_dir(self, base_dir: Path | None = None) -> Path:
        if self.index_dir is None:
            self.index_dir = DEFAULT_INDEX_DIR
        if Path(self.index_dir).is_absolute() or base_dir is None:
            return Path(self.index_dir)
        return base_dir / self.index_dir

    @property
    def metadata_path(self) -> Path:
        return self.resolve_index_dir() / METADATA_FILENAME

    @property
    def vectors_path(self) -> Path:
        return self.resolve_index_dir() / VECTORS_FILENAME

    def embedding_config(self) -> EmbeddingConfig:
        return EmbeddingConfig(
            model_name=self.model_name or DEFAULT_MODEL,
            api_key=self.api_key,
            timeout=self.embed_timeout,
            max_retries=self.max_retries,
        )
