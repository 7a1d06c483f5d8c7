"""Data models for the signal stores."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from vigil.moderation.models import ModerationAction


# --- Reports ---


class ReportType(Enum):
    """Classification carried by a community report."""

    SPAM = "spam"
    HARASSMENT = "harassment"
    ILLEGAL = "illegal"
    CSAM = "csam"
    NUDITY = "nudity"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str) -> ReportType:
        """Map a free-form classification string to a type; unknown values become ``OTHER``."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True)
class Report:
    """A single community report about a target."""

    id: str
    target_id: str
    reporter_pubkey: str
    report_type: ReportType
    created_at: int
    is_trusted_reporter: bool = False
    reason: str = ""

    @property
    def dedup_key(self) -> tuple[str, str, ReportType]:
        return (self.reporter_pubkey, self.target_id, self.report_type)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "target_id": self.target_id,
            "reporter_pubkey": self.reporter_pubkey,
            "report_type": self.report_type.value,
            "created_at": self.created_at,
            "is_trusted_reporter": self.is_trusted_reporter,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Report:
        return cls(
            id=data["id"],
            target_id=data["target_id"],
            reporter_pubkey=data["reporter_pubkey"],
            report_type=ReportType.parse(data.get("report_type", "other")),
            created_at=int(data.get("created_at", 0)),
            is_trusted_reporter=bool(data.get("is_trusted_reporter", False)),
            reason=data.get("reason", ""),
        )


@dataclass(frozen=True)
class ReportAggregation:
    """Derived view of the active reports on one target."""

    target_id: str
    counts_by_type: dict[ReportType, int] = field(default_factory=dict)
    trusted_count: int = 0
    total_count: int = 0
    oldest_active_report_at: Optional[int] = None
    recommendation: ModerationAction = ModerationAction.ALLOW
    confidence: float = 0.0

    def count(self, report_type: ReportType) -> int:
        return self.counts_by_type.get(report_type, 0)


# --- Labels ---


@dataclass(frozen=True)
class Label:
    """A structured annotation from a labeler."""

    id: str
    target_id: str
    namespace: str
    value: str
    labeler_pubkey: str
    created_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "target_id": self.target_id,
            "namespace": self.namespace,
            "value": self.value,
            "labeler_pubkey": self.labeler_pubkey,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Label:
        return cls(
            id=data["id"],
            target_id=data["target_id"],
            namespace=data["namespace"],
            value=data["value"],
            labeler_pubkey=data["labeler_pubkey"],
            created_at=int(data.get("created_at", 0)),
        )


@dataclass(frozen=True)
class LabelConsensus:
    """Per-value labeler counts for one target and namespace."""

    target_id: str
    namespace: str
    counts_by_value: dict[str, int] = field(default_factory=dict)

    @property
    def top(self) -> tuple[str, int] | None:
        """Value with the highest count; ties broken alphabetically."""
        if not self.counts_by_value:
            return None
        return min(self.counts_by_value.items(), key=lambda kv: (-kv[1], kv[0]))


# --- Mutes ---


class MuteKind(Enum):
    PUBKEY = "pubkey"
    EVENT_ID = "event_id"
    KEYWORD = "keyword"
    HASHTAG = "hashtag"


class MuteSource(Enum):
    PERSONAL = "personal"
    SUBSCRIBED = "subscribed"


@dataclass(frozen=True)
class MuteEntry:
    """One muted pubkey, event, keyword or hashtag."""

    owner_pubkey: str
    kind: MuteKind
    value: str
    source: MuteSource = MuteSource.PERSONAL
    list_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner_pubkey": self.owner_pubkey,
            "kind": self.kind.value,
            "value": self.value,
            "source": self.source.value,
            "list_id": self.list_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MuteEntry:
        return cls(
            owner_pubkey=data["owner_pubkey"],
            kind=MuteKind(data["kind"]),
            value=data["value"],
            source=MuteSource(data.get("source", "personal")),
            list_id=data.get("list_id"),
        )
