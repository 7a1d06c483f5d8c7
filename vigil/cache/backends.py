"""Cache backends.

Snapshot envelope::

    {"version": 1, "records": {"<record id>": {"source": "<source>", "data": {...}}}}

Version 0 snapshots (a bare ``{record id: data}`` mapping without source
attribution) are upgraded on read. Snapshots written by a newer version are
read as-is; unknown fields are ignored by the record decoders.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from pathlib import Path
from typing import Any, Optional, Protocol

log = logging.getLogger("vigil.cache")

SNAPSHOT_VERSION = 1


class KeyValueCache(Protocol):
    """Storage capability injected into the stores."""

    def get(self, key: str) -> Optional[dict[str, Any]]: ...

    def put(self, key: str, value: dict[str, Any]) -> None: ...

    def merge(self, key: str, records: dict[str, dict[str, Any]], source: str) -> None: ...

    def purge(self, prefix: str, source: str) -> int: ...

    def delete(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> list[str]: ...


def decode_records(value: Optional[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    """Return ``{record id: {"source": ..., "data": ...}}`` from a snapshot of any version."""
    if not value:
        return {}
    version = value.get("version", 0)
    if version == 0:
        return {rid: {"source": "", "data": data} for rid, data in value.items() if rid != "version"}
    if version > SNAPSHOT_VERSION:
        log.debug("Reading snapshot version %s with reader version %s", version, SNAPSHOT_VERSION)
    records = value.get("records", {})
    return records if isinstance(records, dict) else {}


def _merged(existing: Optional[dict[str, Any]], records: dict[str, dict[str, Any]], source: str) -> dict[str, Any]:
    current = decode_records(existing)
    for rid, data in records.items():
        current[rid] = {"source": source, "data": data}
    return {"version": SNAPSHOT_VERSION, "records": current}


class InMemoryCache:
    """Dict-backed cache for tests and ephemeral engines."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            value = self._data.get(key)
            return copy.deepcopy(value) if value is not None else None

    def put(self, key: str, value: dict[str, Any]) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)
            self._flush()

    def merge(self, key: str, records: dict[str, dict[str, Any]], source: str) -> None:
        with self._lock:
            self._data[key] = _merged(self._data.get(key), copy.deepcopy(records), source)
            self._flush()

    def purge(self, prefix: str, source: str) -> int:
        """Remove every record attributed to *source* under keys starting with *prefix*."""
        removed = 0
        with self._lock:
            for key in [k for k in self._data if k.startswith(prefix)]:
                records = decode_records(self._data[key])
                kept = {rid: r for rid, r in records.items() if r.get("source") != source}
                removed += len(records) - len(kept)
                if kept:
                    self._data[key] = {"version": SNAPSHOT_VERSION, "records": kept}
                else:
                    del self._data[key]
            if removed:
                self._flush()
        return removed

    def delete(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._flush()

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def _flush(self) -> None:
        """Persist hook; called with the lock held after every mutation."""


class JsonFileCache(InMemoryCache):
    """File-backed cache.

    Storage path: ``~/.vigil/cache/cache.json`` unless *base_dir* is given.
    The whole map is rewritten after each mutation.
    """

    CACHE_FILE = "cache.json"

    def __init__(self, base_dir: str | Path | None = None) -> None:
        super().__init__()
        self._base = Path(base_dir) if base_dir else Path.home() / ".vigil" / "cache"
        self._base.mkdir(parents=True, exist_ok=True)
        self._path = self._base / self.CACHE_FILE
        self._data = self._read()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, dict[str, Any]]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError):
            log.warning("Ignoring unreadable cache file %s", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _flush(self) -> None:
        self._path.write_text(json.dumps(self._data, indent=2, sort_keys=True))
