"""Key-value cache shared by the signal stores.

Keys follow ``{store}:{target}`` (``labels:{target}:{namespace}`` for labels).
Values are versioned snapshot envelopes holding source-attributed records,
so writes are merges and purges are scoped to one source.
"""

from vigil.cache.backends import (
    SNAPSHOT_VERSION,
    InMemoryCache,
    JsonFileCache,
    KeyValueCache,
    decode_records,
)

__all__ = [
    "SNAPSHOT_VERSION",
    "InMemoryCache",
    "JsonFileCache",
    "KeyValueCache",
    "decode_records",
]
