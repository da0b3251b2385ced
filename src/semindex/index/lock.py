"""In-process locks shared by the indexer and the searcher."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from semindex.errors import IndexBusyError


class IndexLock:
    """Keeps searches off half-applied state and allows a single writer.

    ``acquire`` guards short critical sections: applying a batch, repairing
    drift, reading during a search. It is re-entrant so helpers may take it
    again. ``writer`` is held for a whole reconcile and never blocks: a
    second writer fails immediately with `IndexBusyError`.

    Processes sharing one index directory still need their own coordination.
    """

    def __init__(self, name: str = "index") -> None:
        self.name = name
        self._lock = threading.RLock()
        self._writer = threading.Lock()

    @contextmanager
    def acquire(self, timeout: float | None = None) -> Iterator[None]:
        acquired = self._lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise IndexBusyError(f"Could not lock {self.name} within {timeout:.1f}s")
        try:
            yield
        finally:
            self._lock.release()

    @contextmanager
    def writer(self) -> Iterator[None]:
        if not self._writer.acquire(blocking=False):
            raise IndexBusyError(f"Another reconcile is already running on {self.name}")
        try:
            yield
        finally:
            self._writer.release()

    @property
    def writing(self) -> bool:
        return self._writer.locked()
