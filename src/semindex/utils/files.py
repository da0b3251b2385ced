"""Utility helpers for walking a corpus on disk."""

from __future__ import annotations

from pathlib import Path
from typing import Collection, Iterable, Iterator

SUPPORTED_EXTENSIONS = frozenset(
    {
        ".ts", ".js", ".tsx", ".jsx", ".py", ".java", ".cpp", ".c", ".h",
        ".md", ".txt", ".json", ".yaml", ".yml", ".pdf",
    }
)

SKIP_DIRS = frozenset(
    {"node_modules", ".git", "dist", "build", ".embedding-index", "__pycache__", ".venv"}
)


def is_supported(path: Path, extensions: Collection[str] = SUPPORTED_EXTENSIONS) -> bool:
    return path.suffix.lower() in extensions


def iter_corpus_paths(
    inputs: Iterable[Path],
    *,
    extensions: Collection[str] = SUPPORTED_EXTENSIONS,
    skip_dirs: Collection[str] = SKIP_DIRS,
) -> Iterator[Path]:
    """Yield supported files from input paths, descending into directories.

    Directories are walked in sorted order so the corpus order is stable
    between runs. Directories named in ``skip_dirs`` are never entered.
    """
    for item in inputs:
        if item.is_dir():
            if item.name in skip_dirs:
                continue
            yield from iter_corpus_paths(
                sorted(item.iterdir()), extensions=extensions, skip_dirs=skip_dirs
            )
        elif item.is_file() and is_supported(item, extensions):
            yield item
