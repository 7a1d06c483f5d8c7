"""Labeler annotations and per-namespace consensus.

Label evidence is source-scoped: every label is attributed to the labeler
that published it, and unsubscribing from a labeler removes all of its
contributions. Each labeler counts at most once per value.
"""

from __future__ import annotations

import logging
from typing import Optional

from vigil.cache import KeyValueCache, decode_records
from vigil.stores.locks import TargetLocks
from vigil.stores.models import Label, LabelConsensus
from vigil.stores.subscriptions import SubscribableList

log = logging.getLogger("vigil.labels")

DEFAULT_MAX_LABELERS = 20


class LabelStore:
    """Labels from subscribed labelers, keyed by ``(target, namespace)``."""

    STORE = "labels"

    def __init__(
        self,
        cache: Optional[KeyValueCache] = None,
        *,
        max_labelers: int = DEFAULT_MAX_LABELERS,
    ) -> None:
        self._cache = cache
        self._labels: dict[tuple[str, str], tuple[Label, ...]] = {}
        self._locks = TargetLocks()
        self.subscriptions = SubscribableList(self.STORE, max_labelers, self._purge_labeler, cache)

    @property
    def tracker(self):
        return self.subscriptions.tracker

    # -- subscriptions -------------------------------------------------------

    def subscribe_to_labeler(self, pubkey: str) -> bool:
        """Trust labels from *pubkey*. Raises ``CapacityError`` at the cap."""
        return self.subscriptions.subscribe(pubkey)

    def unsubscribe_from_labeler(self, pubkey: str) -> int:
        """Stop trusting *pubkey* and purge its labels. Returns the number purged."""
        return self.subscriptions.unsubscribe(pubkey)

    def labelers(self) -> list[str]:
        return list(self.subscriptions)

    # -- ingestion -----------------------------------------------------------

    def ingest_label(self, label: Label) -> bool:
        """Record *label*. Returns False if the labeler is not subscribed or the label is known."""
        if label.labeler_pubkey not in self.subscriptions:
            log.debug("Ignoring label %s from unsubscribed labeler %s", label.id, label.labeler_pubkey)
            return False

        slot = (label.target_id, label.namespace)
        with self._locks.hold(_lock_key(slot)):
            current = self._labels.get(slot, ())
            if any(
                l.labeler_pubkey == label.labeler_pubkey and l.value == label.value
                for l in current
            ):
                return False
            self._labels[slot] = current + (label,)
            # Checked after the insert: a concurrent purge may already have passed this slot
            if label.labeler_pubkey not in self.subscriptions:
                if current:
                    self._labels[slot] = current
                else:
                    del self._labels[slot]
                return False
            if self._cache is not None:
                self._cache.merge(
                    self._key(label.target_id, label.namespace),
                    {f"{label.labeler_pubkey}:{label.value}": label.to_dict()},
                    source=label.labeler_pubkey,
                )
        self.tracker.touch(label.labeler_pubkey, label.created_at)
        self.tracker.mark_available(label.labeler_pubkey)
        return True

    # -- queries -------------------------------------------------------------

    def get_consensus(self, target_id: str, namespace: str) -> LabelConsensus:
        counts: dict[str, int] = {}
        for label in self._labels.get((target_id, namespace), ()):
            counts[label.value] = counts.get(label.value, 0) + 1
        return LabelConsensus(target_id=target_id, namespace=namespace, counts_by_value=counts)

    def get_label_counts(self, target_id: str, namespace: str) -> dict[str, int]:
        return dict(self.get_consensus(target_id, namespace).counts_by_value)

    def has_label(self, target_id: str, namespace: str, value: str) -> bool:
        return self.get_label_counts(target_id, namespace).get(value, 0) > 0

    def labelers_for(self, target_id: str, namespace: str, value: str) -> list[str]:
        """Labelers that applied *value*, for attribution."""
        return sorted(
            l.labeler_pubkey
            for l in self._labels.get((target_id, namespace), ())
            if l.value == value
        )

    # -- purge / persistence -------------------------------------------------

    def _purge_labeler(self, pubkey: str) -> int:
        removed = 0
        for slot in list(self._labels):
            with self._locks.hold(_lock_key(slot)):
                current = self._labels.get(slot, ())
                kept = tuple(l for l in current if l.labeler_pubkey != pubkey)
                if len(kept) == len(current):
                    continue
                removed += len(current) - len(kept)
                if kept:
                    self._labels[slot] = kept
                else:
                    del self._labels[slot]
        if self._cache is not None:
            self._cache.purge(f"{self.STORE}:", pubkey)
        return removed

    def restore(self) -> int:
        """Reload subscriptions and labels of still-subscribed labelers from the cache."""
        if self._cache is None:
            return 0
        self.subscriptions.restore()
        loaded = 0
        for key in self._cache.keys(f"{self.STORE}:"):
            for record in decode_records(self._cache.get(key)).values():
                if record.get("source") not in self.subscriptions:
                    continue
                label = Label.from_dict(record["data"])
                slot = (label.target_id, label.namespace)
                with self._locks.hold(_lock_key(slot)):
                    current = self._labels.get(slot, ())
                    if not any(
                        l.labeler_pubkey == label.labeler_pubkey and l.value == label.value
                        for l in current
                    ):
                        self._labels[slot] = current + (label,)
                        loaded += 1
        log.info("Restored %d labels from cache", loaded)
        return loaded

    def _key(self, target_id: str, namespace: str) -> str:
        return f"{self.STORE}:{target_id}:{namespace}"


def _lock_key(slot: tuple[str, str]) -> str:
    return f"{slot[0]}:{slot[1]}"
