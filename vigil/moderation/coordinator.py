"""Moderation coordinator: the engine's entry point.

Combines the built-in safety list, the caller's mutes, report aggregation
and label consensus into one ``ModerationDecision``:

1. Built-in safety match -> ``block`` at confidence 1.0; nothing else runs.
2. Personal mute -> ``hide`` for this caller only. Subscribed mute -> ``hide``.
3. Report aggregation recommendation, for the event and for its author.
4. Label consensus over the configured moderation namespaces, for the event
   and for its author.
5. Merge: highest severity wins; every non-allow candidate is attributed;
   confidence is the highest candidate confidence, reduced when candidates
   disagree by more than one tier and when feeds are unavailable.

Decisions are computed from in-memory snapshots and never cached, so a
personal mute can never leak into another caller's decision.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from typing import Callable, Optional

from vigil.cache import KeyValueCache
from vigil.config import EngineConfig
from vigil.errors import MalformedEventError
from vigil.events.models import EventKind, LabelEvent, MuteListEvent, RawEvent, ReportEvent
from vigil.events.parser import parse_event
from vigil.events.source import EventPump, EventSource, Feed
from vigil.moderation.models import ModerationAction, ModerationDecision, SignalSource, SourceKind
from vigil.moderation.safety import SafetyList
from vigil.stores.labels import LabelStore
from vigil.stores.models import MuteEntry, MuteSource
from vigil.stores.mutes import MuteIndex
from vigil.stores.reports import NETWORK_SOURCE, ReportAggregator

log = logging.getLogger("vigil.coordinator")

_REPORTS_FEED = "reports"


class Coordinator:
    """Single decision point over all moderation signals."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        cache: Optional[KeyValueCache] = None,
        source: Optional[EventSource] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or EngineConfig()
        self.config.validate()
        self._clock = clock
        self._trusted_reviewers = frozenset(self.config.trusted_reviewers)

        self.reports = ReportAggregator(cache, expiry_days=self.config.report_expiry_days, clock=clock)
        self.labels = LabelStore(cache, max_labelers=self.config.max_labelers)
        self.mutes = MuteIndex(cache, max_mute_lists=self.config.max_mute_lists)
        self.safety = SafetyList(self.config.blocked_hashes, self.config.blocked_keywords)

        self._pump = EventPump(source, self.ingest) if source is not None else None

    # -- ingestion -----------------------------------------------------------

    def ingest(self, raw: RawEvent) -> bool:
        """Parse *raw* and route it to its store. Returns whether any store changed.

        Malformed events are logged and dropped.
        """
        try:
            parsed = parse_event(raw, self._trusted_reviewers)
        except MalformedEventError as e:
            log.warning("Dropping event: %s", e)
            return False

        if parsed is None:
            log.debug("Ignoring event %s of unsupported kind %s", raw.id, raw.kind)
            return False
        if isinstance(parsed, ReportEvent):
            return self.reports.add_report(parsed.report)
        if isinstance(parsed, LabelEvent):
            results = [self.labels.ingest_label(label) for label in parsed.labels]
            return any(results)
        if isinstance(parsed, MuteListEvent):
            return self.mutes.ingest_mute_list(parsed)
        return False

    def ingest_many(self, events: Iterable[RawEvent]) -> int:
        return sum(1 for raw in events if self.ingest(raw))

    # -- subscriptions -------------------------------------------------------

    def subscribe_to_network_reports(self, trusted_pubkeys: Iterable[str]) -> None:
        self.reports.subscribe_to_network_reports(trusted_pubkeys)
        self._follow_reports()

    def subscribe_to_labeler(self, pubkey: str) -> bool:
        """Raises ``CapacityError`` when the labeler cap is reached."""
        added = self.labels.subscribe_to_labeler(pubkey)
        self._follow_source("labels", EventKind.LABEL, pubkey, self.labels.tracker)
        return added

    def unsubscribe_from_labeler(self, pubkey: str) -> int:
        if self._pump is not None:
            self._pump.unfollow(f"labels:{pubkey}")
        return self.labels.unsubscribe_from_labeler(pubkey)

    def subscribe_to_mute_list(self, list_owner_pubkey: str) -> bool:
        """Raises ``CapacityError`` when the mute-list cap is reached."""
        added = self.mutes.subscribe_to_mute_list(list_owner_pubkey)
        self._follow_source("mutes", EventKind.MUTE_LIST, list_owner_pubkey, self.mutes.tracker)
        return added

    def unsubscribe_from_mute_list(self, list_owner_pubkey: str) -> int:
        if self._pump is not None:
            self._pump.unfollow(f"mutes:{list_owner_pubkey}")
        return self.mutes.unsubscribe_from_mute_list(list_owner_pubkey)

    def add_personal_mute(self, owner_pubkey: str, entry: MuteEntry) -> bool:
        return self.mutes.add_personal_mute(owner_pubkey, entry)

    # -- lifecycle -----------------------------------------------------------

    def restore(self) -> dict[str, int]:
        """Reload every store from the cache."""
        return {
            "reports": self.reports.restore(),
            "labels": self.labels.restore(),
            "mutes": self.mutes.restore(),
        }

    async def start(self) -> None:
        """Start a feed for every subscription that has none running.

        Covers feeds deferred because no loop was running, feeds that ended on
        a transport error, and feeds of a freshly restored engine. Each resumes
        from its stored cursor; running feeds are left alone.
        """
        if self._pump is None:
            return
        self._follow_reports(restart=False)
        for pubkey in self.labels.labelers():
            self._follow_source("labels", EventKind.LABEL, pubkey, self.labels.tracker, restart=False)
        for list_id in self.mutes.subscriptions:
            self._follow_source("mutes", EventKind.MUTE_LIST, list_id, self.mutes.tracker, restart=False)

    async def stop(self) -> None:
        if self._pump is not None:
            await self._pump.stop()

    def source_status(self) -> dict[str, dict[str, str]]:
        """Unavailable sources per store, with the failure reason."""
        return {
            "reports": self.reports.tracker.unavailable(),
            "labels": self.labels.tracker.unavailable(),
            "mutes": self.mutes.tracker.unavailable(),
        }

    def _follow_reports(self, restart: bool = True) -> None:
        if self._pump is None or (not restart and self._pump.is_live(_REPORTS_FEED)):
            return
        feed = Feed(
            kind=EventKind.REPORT,
            authors=self.reports.network,
            since=self.reports.tracker.last_seen(NETWORK_SOURCE),
        )
        self._pump.follow(_REPORTS_FEED, feed, self.reports.tracker, NETWORK_SOURCE)

    def _follow_source(self, prefix: str, kind: EventKind, pubkey: str, tracker, restart: bool = True) -> None:
        feed_id = f"{prefix}:{pubkey}"
        if self._pump is None or (not restart and self._pump.is_live(feed_id)):
            return
        feed = Feed(kind=kind, authors=frozenset({pubkey}), since=tracker.last_seen(pubkey))
        self._pump.follow(feed_id, feed, tracker, pubkey)

    # -- decisions -----------------------------------------------------------

    def check_content(self, caller_pubkey: str, event: RawEvent) -> ModerationDecision:
        """Return the moderation decision for *event* as seen by *caller_pubkey*."""
        now = self._clock()
        target_id = event.id

        match = self.safety.check(event)
        if match is not None:
            return ModerationDecision(
                target_id=target_id,
                action=ModerationAction.BLOCK,
                sources=(
                    SignalSource(
                        kind=SourceKind.BUILT_IN,
                        action=ModerationAction.BLOCK,
                        confidence=1.0,
                        detail=f"built-in {match.rule} match",
                        refs=(match.value,),
                    ),
                ),
                confidence=1.0,
                computed_at=now,
            )

        candidates = self._mute_candidates(caller_pubkey, event)

        # Content first, then the author's account
        scopes = [(target_id, "")]
        if event.pubkey and event.pubkey != target_id:
            scopes.append((event.pubkey, "account "))

        for scope_id, prefix in scopes:
            report_candidate = self._report_candidate(scope_id, now, prefix)
            if report_candidate is not None:
                candidates.append(report_candidate)

        for scope_id, prefix in scopes:
            label_candidate = self._label_candidate(scope_id, prefix)
            if label_candidate is not None:
                candidates.append(label_candidate)

        return self._merge(target_id, candidates, now)

    def _mute_candidates(self, caller_pubkey: str, event: RawEvent) -> list[SignalSource]:
        matches = self.mutes.check_content(caller_pubkey, event)
        personal = [m for m in matches if m.source == MuteSource.PERSONAL]
        subscribed = [m for m in matches if m.source == MuteSource.SUBSCRIBED]

        candidates = []
        if personal:
            candidates.append(
                SignalSource(
                    kind=SourceKind.PERSONAL_MUTE,
                    action=ModerationAction.HIDE,
                    confidence=self.config.personal_mute_confidence,
                    detail=_describe_mutes(personal),
                    refs=tuple(f"{m.kind.value}:{m.value}" for m in personal),
                )
            )
        if subscribed:
            candidates.append(
                SignalSource(
                    kind=SourceKind.SUBSCRIBED_MUTE,
                    action=ModerationAction.HIDE,
                    confidence=self.config.subscribed_mute_confidence,
                    detail=_describe_mutes(subscribed),
                    refs=tuple(sorted({m.list_id or "" for m in subscribed})),
                )
            )
        return candidates

    def _report_candidate(self, target_id: str, now: float, prefix: str = "") -> Optional[SignalSource]:
        agg = self.reports.get_reports_for_event(target_id, now)
        if agg.recommendation == ModerationAction.ALLOW:
            return None
        by_type = ", ".join(
            f"{t.value}={n}" for t, n in sorted(agg.counts_by_type.items(), key=lambda kv: kv[0].value)
        )
        return SignalSource(
            kind=SourceKind.REPORTS,
            action=agg.recommendation,
            confidence=agg.confidence,
            detail=f"{prefix}{agg.total_count} reports, {agg.trusted_count} trusted ({by_type})",
            refs=tuple(sorted(t.value for t in agg.counts_by_type)),
        )

    def _label_candidate(self, target_id: str, prefix: str = "") -> Optional[SignalSource]:
        best: Optional[SignalSource] = None
        for namespace in self.config.moderation_namespaces:
            top = self.labels.get_consensus(target_id, namespace).top
            if top is None:
                continue
            value, count = top
            if count >= self.config.label_hide_threshold:
                action, confidence = ModerationAction.HIDE, self.config.label_hide_confidence
            elif count >= self.config.label_blur_threshold:
                action, confidence = ModerationAction.BLUR, self.config.label_blur_confidence
            else:
                continue
            if best is not None and (best.action.severity, best.confidence) >= (action.severity, confidence):
                continue
            best = SignalSource(
                kind=SourceKind.LABELS,
                action=action,
                confidence=confidence,
                detail=f"{prefix}{namespace}/{value} from {count} labeler(s)",
                refs=tuple(self.labels.labelers_for(target_id, namespace, value)),
            )
        return best

    def _merge(self, target_id: str, candidates: list[SignalSource], now: float) -> ModerationDecision:
        contributing = tuple(c for c in candidates if c.action != ModerationAction.ALLOW)
        if not contributing:
            return ModerationDecision(target_id=target_id, computed_at=now)

        action = max((c.action for c in contributing), key=lambda a: a.severity)
        confidence = max(c.confidence for c in contributing)

        severities = [c.action.severity for c in contributing]
        if max(severities) - min(severities) > 1:
            confidence -= self.config.conflict_penalty

        degraded = sum(1 for unavailable in self.source_status().values() if unavailable)
        confidence -= degraded * self.config.degraded_penalty

        return ModerationDecision(
            target_id=target_id,
            action=action,
            sources=contributing,
            confidence=round(max(confidence, 0.0), 6),
            computed_at=now,
        )


def _describe_mutes(entries: list[MuteEntry]) -> str:
    return ", ".join(f"{m.kind.value} {m.value!r}" for m in entries)
