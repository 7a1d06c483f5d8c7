"""Per-target write serialization."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class TargetLocks:
    """Hands out one lock per target id.

    Writers to the same target are serialized; writers to different targets
    proceed independently. Readers never take these locks.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, target_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(target_id)
            if lock is None:
                lock = self._locks[target_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, target_id: str) -> Iterator[None]:
        lock = self._lock_for(target_id)
        with lock:
            yield
