"""Ingestion-boundary parsing.

``parse_event`` validates a ``RawEvent`` once and turns it into the typed
variant for its kind. Anything missing a tag its kind requires raises
``MalformedEventError``; kinds the engine does not consume yield ``None``.
"""

from __future__ import annotations

from collections.abc import Collection
from typing import Optional

from vigil.errors import MalformedEventError
from vigil.events.models import (
    EventKind,
    LabelEvent,
    MuteListEvent,
    ParsedEvent,
    RawEvent,
    ReportEvent,
)
from vigil.stores.models import Label, MuteEntry, MuteKind, MuteSource, Report, ReportType

_TARGET_TAGS = ("e", "p")

# Mute-list tag name -> entry kind
_MUTE_TAGS: dict[str, MuteKind] = {
    "p": MuteKind.PUBKEY,
    "e": MuteKind.EVENT_ID,
    "word": MuteKind.KEYWORD,
    "t": MuteKind.HASHTAG,
}


def parse_event(
    raw: RawEvent, trusted_reviewers: Collection[str] = ()
) -> Optional[ParsedEvent]:
    """Validate *raw* and return its typed variant."""
    if not raw.id:
        raise MalformedEventError("", "missing id")
    if not raw.pubkey:
        raise MalformedEventError(raw.id, "missing author pubkey")

    if raw.kind == EventKind.REPORT:
        return _parse_report(raw, trusted_reviewers)
    if raw.kind == EventKind.LABEL:
        return _parse_label(raw)
    if raw.kind == EventKind.MUTE_LIST:
        return _parse_mute_list(raw)
    return None


def _parse_report(raw: RawEvent, trusted_reviewers: Collection[str]) -> ReportEvent:
    # An event target takes precedence over the account it belongs to.
    target_tag = _first_tag(raw, "e") or _first_tag(raw, "p")
    if target_tag is None:
        raise MalformedEventError(raw.id, "report has no e/p target tag")

    type_value = target_tag[2] if len(target_tag) > 2 and target_tag[2] else None
    if type_value is None:
        type_value = next(iter(raw.tag_values("report")), None)
    if not type_value:
        raise MalformedEventError(raw.id, "report has no type")

    report = Report(
        id=raw.id,
        target_id=target_tag[1],
        reporter_pubkey=raw.pubkey,
        report_type=ReportType.parse(type_value),
        created_at=raw.created_at,
        is_trusted_reporter=raw.pubkey in trusted_reviewers,
        reason=raw.content,
    )
    return ReportEvent(raw=raw, report=report)


def _parse_label(raw: RawEvent) -> LabelEvent:
    namespaces = raw.tag_values("L")
    value_tags = [t for t in raw.tags if t[0] == "l" and len(t) > 1 and t[1]]
    if not value_tags:
        raise MalformedEventError(raw.id, "label has no l value tag")

    targets = [v for name in _TARGET_TAGS for v in raw.tag_values(name) if v]
    if not targets:
        raise MalformedEventError(raw.id, "label has no e/p target tag")

    labels = []
    for tag in value_tags:
        namespace = tag[2] if len(tag) > 2 and tag[2] else next(iter(namespaces), "")
        if not namespace:
            raise MalformedEventError(raw.id, f"label value {tag[1]!r} has no namespace")
        for target in targets:
            labels.append(
                Label(
                    id=raw.id,
                    target_id=target,
                    namespace=namespace,
                    value=tag[1],
                    labeler_pubkey=raw.pubkey,
                    created_at=raw.created_at,
                )
            )
    return LabelEvent(raw=raw, labels=tuple(labels))


def _parse_mute_list(raw: RawEvent) -> MuteListEvent:
    entries = []
    seen = set()
    for tag in raw.tags:
        kind = _MUTE_TAGS.get(tag[0])
        if kind is None or len(tag) < 2 or not tag[1]:
            continue
        key = (kind, tag[1])
        if key in seen:
            continue
        seen.add(key)
        entries.append(
            MuteEntry(
                owner_pubkey=raw.pubkey,
                kind=kind,
                value=tag[1],
                source=MuteSource.SUBSCRIBED,
                list_id=raw.pubkey,
            )
        )
    return MuteListEvent(raw=raw, list_id=raw.pubkey, entries=tuple(entries))


def _first_tag(raw: RawEvent, name: str) -> Optional[tuple[str, ...]]:
    for tag in raw.tags:
        if tag[0] == name and len(tag) > 1 and tag[1]:
            return tag
    return None
