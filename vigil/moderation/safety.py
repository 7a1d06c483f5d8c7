"""Built-in safety list.

An app-maintained static blocklist of media hashes and keywords. A match
blocks the content outright; nothing downstream can override it.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Optional

from vigil.events.models import RawEvent

_HEX_RE = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class SafetyMatch:
    rule: str  # "hash" | "keyword"
    value: str


def event_hashes(event: RawEvent) -> set[str]:
    """Hashes attached to *event*: ``x`` tags, ``imeta`` hash fields, and the content digest."""
    hashes = {v.lower() for v in event.tag_values("x") if _HEX_RE.match(v.lower())}
    for tag in event.tags:
        if tag[0] != "imeta":
            continue
        for part in tag[1:]:
            name, _, value = part.partition(" ")
            if name == "x" and _HEX_RE.match(value.lower()):
                hashes.add(value.lower())
    if event.content:
        hashes.add(hashlib.sha256(event.content.encode("utf-8")).hexdigest())
    return hashes


class SafetyList:
    """Static hash and keyword blocklist."""

    def __init__(self, hashes: Iterable[str] = (), keywords: Iterable[str] = ()) -> None:
        self._hashes = frozenset(h.lower() for h in hashes)
        self._keywords: list[tuple[str, re.Pattern[str]]] = [
            (k, re.compile(re.escape(k), re.IGNORECASE)) for k in sorted(set(keywords)) if k
        ]

    def __len__(self) -> int:
        return len(self._hashes) + len(self._keywords)

    def check(self, event: RawEvent) -> Optional[SafetyMatch]:
        """Return the first matching rule, hashes before keywords."""
        for digest in sorted(event_hashes(event) & self._hashes):
            return SafetyMatch(rule="hash", value=digest)
        for keyword, pattern in self._keywords:
            if pattern.search(event.content):
                return SafetyMatch(rule="keyword", value=keyword)
        return None
