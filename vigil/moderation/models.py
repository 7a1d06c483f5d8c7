"""Data models for moderation decisions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ModerationAction(Enum):
    """Action applied to a target, in ascending severity."""

    ALLOW = "allow"
    BLUR = "blur"
    HIDE = "hide"
    BLOCK = "block"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    def __lt__(self, other: ModerationAction) -> bool:
        if not isinstance(other, ModerationAction):
            return NotImplemented
        return self.severity < other.severity

    def __le__(self, other: ModerationAction) -> bool:
        if not isinstance(other, ModerationAction):
            return NotImplemented
        return self.severity <= other.severity


_SEVERITY = {
    ModerationAction.ALLOW: 0,
    ModerationAction.BLUR: 1,
    ModerationAction.HIDE: 2,
    ModerationAction.BLOCK: 3,
}


class SourceKind(Enum):
    """Which signal produced a candidate action."""

    BUILT_IN = "built_in"
    PERSONAL_MUTE = "personal_mute"
    SUBSCRIBED_MUTE = "subscribed_mute"
    REPORTS = "reports"
    LABELS = "labels"


@dataclass(frozen=True)
class SignalSource:
    """Attribution for one signal that contributed to a decision."""

    kind: SourceKind
    action: ModerationAction
    confidence: float
    detail: str = ""
    refs: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "action": self.action.value,
            "confidence": self.confidence,
            "detail": self.detail,
            "refs": list(self.refs),
        }


@dataclass(frozen=True)
class ModerationDecision:
    """The single moderation outcome for a target.

    ``computed_at`` is informational and excluded from equality, so two
    evaluations of the same snapshot compare equal.
    """

    target_id: str
    action: ModerationAction = ModerationAction.ALLOW
    sources: tuple[SignalSource, ...] = ()
    confidence: float = 0.0
    computed_at: float = field(default=0.0, compare=False)

    @property
    def reasons(self) -> list[str]:
        return [f"[{s.action.value}] {s.kind.value}: {s.detail}" for s in self.sources]

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_id": self.target_id,
            "action": self.action.value,
            "confidence": self.confidence,
            "sources": [s.to_dict() for s in self.sources],
            "computed_at": self.computed_at,
        }
