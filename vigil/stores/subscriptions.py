"""Subscription bookkeeping shared by the stores.

``SourceTracker`` records per-source availability and last-seen cursors.
``SubscribableList`` adds a capped subscription set with a pluggable purge
hook. Stores compose these instead of inheriting from a common base.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterator, Optional

from vigil.cache import KeyValueCache
from vigil.errors import CapacityError

log = logging.getLogger("vigil.subscriptions")

PurgeHook = Callable[[str], int]


class SourceTracker:
    """Availability and last-seen timestamp per source.

    Cursors are persisted as ``cursor:{store}:{source}`` so a restarted
    engine resumes each feed incrementally.
    """

    def __init__(self, store: str, cache: Optional[KeyValueCache] = None) -> None:
        self.store = store
        self._cache = cache
        self._cursors: dict[str, int] = {}
        self._unavailable: dict[str, str] = {}
        self._lock = threading.Lock()

    def _key(self, source_id: str) -> str:
        return f"cursor:{self.store}:{source_id}"

    def touch(self, source_id: str, created_at: int) -> None:
        """Advance the cursor for *source_id*; never moves backwards."""
        with self._lock:
            if created_at <= self._cursors.get(source_id, 0):
                return
            self._cursors[source_id] = created_at
        if self._cache is not None:
            self._cache.put(self._key(source_id), {"version": 1, "last_seen": created_at})

    def last_seen(self, source_id: str) -> int:
        with self._lock:
            if source_id in self._cursors:
                return self._cursors[source_id]
        if self._cache is not None:
            value = self._cache.get(self._key(source_id)) or {}
            return int(value.get("last_seen", 0))
        return 0

    def forget(self, source_id: str) -> None:
        with self._lock:
            self._cursors.pop(source_id, None)
            self._unavailable.pop(source_id, None)
        if self._cache is not None:
            self._cache.delete(self._key(source_id))

    def mark_unavailable(self, source_id: str, reason: str = "") -> None:
        with self._lock:
            self._unavailable[source_id] = reason
        log.warning("%s source %s temporarily unavailable: %s", self.store, source_id, reason)

    def mark_available(self, source_id: str) -> None:
        with self._lock:
            if self._unavailable.pop(source_id, None) is not None:
                log.info("%s source %s available again", self.store, source_id)

    def is_available(self, source_id: str) -> bool:
        with self._lock:
            return source_id not in self._unavailable

    def unavailable(self) -> dict[str, str]:
        with self._lock:
            return dict(self._unavailable)


class SubscribableList:
    """A capped set of subscribed sources.

    *purge* is called with the source id on unsubscribe and must remove that
    source's attributable contributions, returning how many were removed.
    """

    def __init__(
        self,
        store: str,
        limit: int,
        purge: PurgeHook,
        cache: Optional[KeyValueCache] = None,
    ) -> None:
        self.store = store
        self.limit = limit
        self._purge = purge
        self._cache = cache
        self._sources: frozenset[str] = frozenset()
        self._lock = threading.Lock()
        self.tracker = SourceTracker(store, cache)

    @property
    def _key(self) -> str:
        return f"subscriptions:{self.store}"

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._sources

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._sources))

    def __len__(self) -> int:
        return len(self._sources)

    def subscribe(self, source_id: str) -> bool:
        """Add *source_id*. Returns False if already subscribed.

        Raises ``CapacityError`` when the cap is reached; the set is unchanged.
        """
        with self._lock:
            if source_id in self._sources:
                return False
            if len(self._sources) >= self.limit:
                raise CapacityError(self.store, self.limit)
            self._sources = self._sources | {source_id}
            self._persist()
        log.info("Subscribed to %s source %s (%d/%d)", self.store, source_id, len(self._sources), self.limit)
        return True

    def unsubscribe(self, source_id: str) -> int:
        """Remove *source_id* and purge its contributions. Returns the purge count."""
        with self._lock:
            if source_id not in self._sources:
                return 0
            self._sources = self._sources - {source_id}
            self._persist()
        removed = self._purge(source_id)
        self.tracker.forget(source_id)
        log.info("Unsubscribed from %s source %s, purged %d records", self.store, source_id, removed)
        return removed

    def restore(self) -> None:
        """Reload the subscription set from the cache."""
        if self._cache is None:
            return
        value = self._cache.get(self._key) or {}
        with self._lock:
            self._sources = frozenset(value.get("sources", []))

    def _persist(self) -> None:
        if self._cache is not None:
            self._cache.put(self._key, {"version": 1, "sources": sorted(self._sources)})
