"""Community report aggregation.

Reports are append-only: raw reports are kept for audit, and the aggregate
view (counts, recommendation) is recomputed on every read after dropping
reports older than the expiry window. Expiry is never swept in the
background, so targets nobody reads cost nothing.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Iterable
from typing import Callable, Optional

from vigil.cache import KeyValueCache, decode_records
from vigil.moderation.models import ModerationAction
from vigil.stores.locks import TargetLocks
from vigil.stores.models import Report, ReportAggregation, ReportType
from vigil.stores.subscriptions import SourceTracker

log = logging.getLogger("vigil.reports")

SECONDS_PER_DAY = 86400

NETWORK_SOURCE = "network"

# Recommendation thresholds
CSAM_BLOCK_COUNT = 1
ILLEGAL_BLOCK_COUNT = 2
HIDE_TRUSTED_COUNT = 3
HIDE_TOTAL_COUNT = 5
BLUR_TRUSTED_COUNT = 1
BLUR_TOTAL_COUNT = 2


def recommend(
    counts_by_type: dict[ReportType, int], trusted_count: int, total_count: int
) -> tuple[ModerationAction, float]:
    """Map active report counts to an action and confidence."""
    if counts_by_type.get(ReportType.CSAM, 0) >= CSAM_BLOCK_COUNT:
        return ModerationAction.BLOCK, 1.0
    if counts_by_type.get(ReportType.ILLEGAL, 0) >= ILLEGAL_BLOCK_COUNT:
        return ModerationAction.BLOCK, 1.0
    if trusted_count >= HIDE_TRUSTED_COUNT or total_count >= HIDE_TOTAL_COUNT:
        return ModerationAction.HIDE, 0.9
    if trusted_count >= BLUR_TRUSTED_COUNT or total_count >= BLUR_TOTAL_COUNT:
        return ModerationAction.BLUR, 0.6
    return ModerationAction.ALLOW, 0.0


class ReportAggregator:
    """Accumulates reports per target and recommends an action."""

    STORE = "reports"

    def __init__(
        self,
        cache: Optional[KeyValueCache] = None,
        *,
        expiry_days: float = 7.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self._expiry_seconds = expiry_days * SECONDS_PER_DAY
        self._clock = clock
        self._reports: dict[str, tuple[Report, ...]] = {}
        self._network: Optional[frozenset[str]] = None
        self._locks = TargetLocks()
        self.tracker = SourceTracker(self.STORE, cache)

    # -- network -------------------------------------------------------------

    def subscribe_to_network_reports(self, trusted_pubkeys: Iterable[str]) -> None:
        """Count only reports whose reporter is in *trusted_pubkeys*.

        New reports from outside the network are dropped on ingest. Reports
        already stored stay in the raw log but stop counting once their
        reporter leaves the network.
        """
        self._network = frozenset(trusted_pubkeys)
        if self._cache is not None:
            self._cache.put(self._network_key, {"version": 1, "pubkeys": sorted(self._network)})
        log.info("Counting reports from %d network identities", len(self._network))

    @property
    def network(self) -> Optional[frozenset[str]]:
        return self._network

    def accepts(self, reporter_pubkey: str) -> bool:
        return self._network is None or reporter_pubkey in self._network

    # -- ingestion -----------------------------------------------------------

    def add_report(self, report: Report) -> bool:
        """Store *report*. Returns False if it was ignored or already present."""
        if not self.accepts(report.reporter_pubkey):
            log.debug("Ignoring report %s from outside the network", report.id)
            return False

        with self._locks.hold(report.target_id):
            current = self._reports.get(report.target_id, ())
            if any(r.id == report.id for r in current):
                return False
            self._reports[report.target_id] = current + (report,)

        if self._cache is not None:
            self._cache.merge(
                self._key(report.target_id),
                {report.id: report.to_dict()},
                source=report.reporter_pubkey,
            )
        self.tracker.touch(NETWORK_SOURCE, report.created_at)
        self.tracker.mark_available(NETWORK_SOURCE)
        return True

    # -- queries -------------------------------------------------------------

    def get_reports_for_event(self, target_id: str, now: Optional[float] = None) -> ReportAggregation:
        """Aggregate the active reports on *target_id*.

        A report is active while it is inside the expiry window and its
        reporter is in the current network.
        """
        now = self._clock() if now is None else now
        cutoff = now - self._expiry_seconds
        active = [
            r
            for r in self._reports.get(target_id, ())
            if r.created_at >= cutoff and self.accepts(r.reporter_pubkey)
        ]
        if not active:
            return ReportAggregation(target_id=target_id)

        trusted_by_key: dict[tuple, bool] = {}
        for r in active:
            trusted_by_key[r.dedup_key] = trusted_by_key.get(r.dedup_key, False) or r.is_trusted_reporter

        counts = Counter(key[2] for key in trusted_by_key)
        trusted_count = sum(1 for trusted in trusted_by_key.values() if trusted)
        total_count = len(trusted_by_key)
        action, confidence = recommend(dict(counts), trusted_count, total_count)

        return ReportAggregation(
            target_id=target_id,
            counts_by_type=dict(counts),
            trusted_count=trusted_count,
            total_count=total_count,
            oldest_active_report_at=min(r.created_at for r in active),
            recommendation=action,
            confidence=confidence,
        )

    def raw_reports(self, target_id: str) -> tuple[Report, ...]:
        """Every stored report on *target_id*, expired ones included."""
        return self._reports.get(target_id, ())

    def targets(self) -> list[str]:
        return sorted(self._reports)

    # -- persistence ---------------------------------------------------------

    def restore(self) -> int:
        """Reload raw reports from the cache. Returns the number loaded."""
        if self._cache is None:
            return 0
        network = self._cache.get(self._network_key)
        if network is not None:
            self._network = frozenset(network.get("pubkeys", []))
        loaded = 0
        for key in self._cache.keys(f"{self.STORE}:"):
            target_id = key.split(":", 1)[1]
            records = decode_records(self._cache.get(key))
            reports = tuple(
                sorted(
                    (Report.from_dict(r["data"]) for r in records.values()),
                    key=lambda r: (r.created_at, r.id),
                )
            )
            with self._locks.hold(target_id):
                self._reports[target_id] = reports
            loaded += len(reports)
        log.info("Restored %d reports from cache", loaded)
        return loaded

    def _key(self, target_id: str) -> str:
        return f"{self.STORE}:{target_id}"

    @property
    def _network_key(self) -> str:
        return f"subscriptions:{self.STORE}"
