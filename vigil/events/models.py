"""Event data models.

``RawEvent`` is the generic shape delivered by the transport. It is parsed
once at the ingestion boundary into one of the typed variants below; stores
only ever see validated variants.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Union

from vigil.stores.models import Label, MuteEntry, Report

_HASHTAG_RE = re.compile(r"#(\w+)")


class EventKind(IntEnum):
    """Event kinds consumed by the engine."""

    MUTE_LIST = 10000
    REPORT = 1984
    LABEL = 1985


@dataclass(frozen=True)
class RawEvent:
    """A decoded event as delivered by the transport."""

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: tuple[tuple[str, ...], ...] = ()
    content: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RawEvent:
        return cls(
            id=str(data.get("id", "")),
            pubkey=str(data.get("pubkey", "")),
            created_at=int(data.get("created_at", 0)),
            kind=int(data.get("kind", 0)),
            tags=tuple(tuple(str(v) for v in t) for t in data.get("tags", []) if t),
            content=str(data.get("content", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(t) for t in self.tags],
            "content": self.content,
        }

    def tag_values(self, name: str) -> list[str]:
        """Return the first value of every tag called *name*."""
        return [t[1] for t in self.tags if len(t) > 1 and t[0] == name]

    @property
    def hashtags(self) -> set[str]:
        """Lower-cased hashtags from ``t`` tags and ``#word`` tokens in content."""
        tags = {v.lower() for v in self.tag_values("t")}
        tags.update(m.lower() for m in _HASHTAG_RE.findall(self.content))
        return tags


# --- Typed variants ---


@dataclass(frozen=True)
class ReportEvent:
    raw: RawEvent
    report: Report


@dataclass(frozen=True)
class LabelEvent:
    raw: RawEvent
    labels: tuple[Label, ...] = ()


@dataclass(frozen=True)
class MuteListEvent:
    """A full replacement of one owner's published mute list."""

    raw: RawEvent
    list_id: str
    entries: tuple[MuteEntry, ...] = field(default_factory=tuple)


ParsedEvent = Union[ReportEvent, LabelEvent, MuteListEvent]
