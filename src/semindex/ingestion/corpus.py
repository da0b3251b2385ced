"""Caller-side corpus loading: turn paths on disk into ``(id, content)`` pairs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Collection, Iterable, Iterator, Tuple

from semindex.ingestion.pdf_loader import extract_text
from semindex.utils.files import SKIP_DIRS, SUPPORTED_EXTENSIONS, iter_corpus_paths

LOGGER = logging.getLogger(__name__)


def document_id(path: Path) -> str:
    """Canonical identifier of a document: its resolved absolute path."""
    return str(Path(path).resolve())


def read_document(path: Path) -> str | None:
    """Read a document's text, or ``None`` when it cannot be decoded."""
    if path.suffix.lower() == ".pdf":
        text = extract_text(path)
        if not text:
            LOGGER.warning("No text extracted from %s", path)
            return None
        return text
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        LOGGER.warning("Skipping %s: not valid UTF-8 text", path)
    except OSError as exc:
        LOGGER.warning("Skipping %s: %s", path, exc)
    return None


def iter_corpus(
    inputs: Iterable[Path],
    *,
    extensions: Collection[str] = SUPPORTED_EXTENSIONS,
    skip_dirs: Collection[str] = SKIP_DIRS,
) -> Iterator[Tuple[str, str]]:
    """Yield ``(id, content)`` for every readable document under ``inputs``."""
    seen: set[str] = set()
    for path in iter_corpus_paths(inputs, extensions=extensions, skip_dirs=skip_dirs):
        doc_id = document_id(path)
        if doc_id in seen:
            continue
        content = read_document(path)
        if content is None:
            continue
        seen.add(doc_id)
        yield doc_id, content


def load_corpus(inputs: Iterable[Path], **kwargs) -> list[Tuple[str, str]]:
    corpus = list(iter_corpus(inputs, **kwargs))
    LOGGER.info("Found %d documents to index", len(corpus))
    return corpus
