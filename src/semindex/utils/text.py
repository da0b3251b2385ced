"""Text helpers for hashing and preview rendering."""

from __future__ import annotations

import hashlib
from typing import Iterable


def content_hash(text: str) -> str:
    """Return the SHA256 hex digest of ``text`` encoded as UTF-8."""
    return hashlib.sha256(text.encode("utf-8", errors="surrogatepass")).hexdigest()


def truncate(text: str, max_chars: int | None) -> str:
    """Cut ``text`` to at most ``max_chars`` characters (``None`` keeps it whole)."""
    if max_chars is None or len(text) <= max_chars:
        return text
    return text[: max(max_chars, 0)]


def normalize_whitespace(lines: Iterable[str]) -> str:
    """Collapse whitespace and join lines."""
    return "\n".join(line.strip() for line in lines if line.strip())
