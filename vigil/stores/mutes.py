"""Personal and subscribed mute lists.

Personal mutes belong to one owner and only ever affect that owner's
checks. Subscribed lists are published by other identities, apply to every
caller, and are replaced wholesale by each newer list event from their owner.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Optional

from vigil.cache import KeyValueCache, decode_records
from vigil.events.models import MuteListEvent, RawEvent
from vigil.stores.locks import TargetLocks
from vigil.stores.models import MuteEntry, MuteKind, MuteSource
from vigil.stores.subscriptions import SubscribableList

log = logging.getLogger("vigil.mutes")

DEFAULT_MAX_MUTE_LISTS = 20

_PERSONAL = "personal"


def entry_matches(entry: MuteEntry, event: RawEvent) -> bool:
    """Whether *entry* applies to *event*."""
    if entry.kind == MuteKind.PUBKEY:
        return entry.value == event.pubkey
    if entry.kind == MuteKind.EVENT_ID:
        return entry.value == event.id
    if entry.kind == MuteKind.KEYWORD:
        return bool(entry.value) and entry.value.lower() in event.content.lower()
    if entry.kind == MuteKind.HASHTAG:
        return entry.value.lstrip("#").lower() in event.hashtags
    return False


class MuteIndex:
    """Mute entries indexed by owner (personal) and list id (subscribed)."""

    STORE = "mutes"

    def __init__(
        self,
        cache: Optional[KeyValueCache] = None,
        *,
        max_mute_lists: int = DEFAULT_MAX_MUTE_LISTS,
    ) -> None:
        self._cache = cache
        self._personal: dict[str, tuple[MuteEntry, ...]] = {}
        self._lists: dict[str, tuple[MuteEntry, ...]] = {}
        self._list_versions: dict[str, int] = {}
        self._locks = TargetLocks()
        self.subscriptions = SubscribableList(self.STORE, max_mute_lists, self._purge_list, cache)

    @property
    def tracker(self):
        return self.subscriptions.tracker

    # -- personal ------------------------------------------------------------

    def add_personal_mute(self, owner_pubkey: str, entry: MuteEntry) -> bool:
        """Mute for *owner_pubkey* only. Returns False if already muted."""
        entry = dataclasses.replace(
            entry, owner_pubkey=owner_pubkey, source=MuteSource.PERSONAL, list_id=None
        )
        with self._locks.hold(f"{_PERSONAL}:{owner_pubkey}"):
            current = self._personal.get(owner_pubkey, ())
            if entry in current:
                return False
            self._personal[owner_pubkey] = current + (entry,)

        if self._cache is not None:
            self._cache.merge(
                self._personal_key(owner_pubkey),
                {_record_id(entry): entry.to_dict()},
                source=_PERSONAL,
            )
        return True

    def remove_personal_mute(self, owner_pubkey: str, kind: MuteKind, value: str) -> bool:
        with self._locks.hold(f"{_PERSONAL}:{owner_pubkey}"):
            current = self._personal.get(owner_pubkey, ())
            kept = tuple(e for e in current if not (e.kind == kind and e.value == value))
            if len(kept) == len(current):
                return False
            self._personal[owner_pubkey] = kept

        if self._cache is not None:
            self._cache.delete(self._personal_key(owner_pubkey))
            if kept:
                self._cache.merge(
                    self._personal_key(owner_pubkey),
                    {_record_id(e): e.to_dict() for e in kept},
                    source=_PERSONAL,
                )
        return True

    def personal_mutes(self, owner_pubkey: str) -> tuple[MuteEntry, ...]:
        return self._personal.get(owner_pubkey, ())

    # -- subscribed lists ----------------------------------------------------

    def subscribe_to_mute_list(self, list_owner_pubkey: str) -> bool:
        """Follow the mute list published by *list_owner_pubkey*.

        Entries arrive through ``ingest_mute_list`` once the list is fetched.
        Raises ``CapacityError`` at the cap.
        """
        return self.subscriptions.subscribe(list_owner_pubkey)

    def unsubscribe_from_mute_list(self, list_owner_pubkey: str) -> int:
        """Stop following a list and purge only its entries."""
        return self.subscriptions.unsubscribe(list_owner_pubkey)

    def ingest_mute_list(self, event: MuteListEvent) -> bool:
        """Replace a subscribed list with *event* if it is newer than what we hold."""
        list_id = event.list_id
        if list_id not in self.subscriptions:
            log.debug("Ignoring mute list from unsubscribed owner %s", list_id)
            return False

        created_at = event.raw.created_at
        with self._locks.hold(list_id):
            # An unsubscribe may have purged this list since the check above
            if list_id not in self.subscriptions:
                return False
            if created_at <= self._list_versions.get(list_id, -1):
                return False
            self._lists[list_id] = event.entries
            self._list_versions[list_id] = created_at
            if self._cache is not None:
                self._cache.delete(self._list_key(list_id))
                self._cache.merge(
                    self._list_key(list_id),
                    {_record_id(e): e.to_dict() for e in event.entries},
                    source=list_id,
                )
                self._cache.put(self._version_key(list_id), {"version": 1, "created_at": created_at})
        self.tracker.touch(list_id, created_at)
        self.tracker.mark_available(list_id)
        log.debug("Mute list %s now has %d entries", list_id, len(event.entries))
        return True

    def list_entries(self, list_id: str) -> tuple[MuteEntry, ...]:
        return self._lists.get(list_id, ())

    # -- matching ------------------------------------------------------------

    def check_content(self, caller_pubkey: str, event: RawEvent) -> list[MuteEntry]:
        """Every entry that matches *event* for *caller_pubkey*.

        Personal entries come first, then subscribed entries by list id.
        """
        matches = [e for e in self._personal.get(caller_pubkey, ()) if entry_matches(e, event)]
        lists = self._lists.copy()
        for list_id in sorted(lists):
            matches.extend(e for e in lists[list_id] if entry_matches(e, event))
        return matches

    # -- purge / persistence -------------------------------------------------

    def _purge_list(self, list_id: str) -> int:
        with self._locks.hold(list_id):
            removed = len(self._lists.pop(list_id, ()))
            self._list_versions.pop(list_id, None)
        if self._cache is not None:
            self._cache.purge(f"{self.STORE}:list:", list_id)
            self._cache.delete(self._version_key(list_id))
        return removed

    def restore(self) -> int:
        """Reload personal mutes, subscriptions and subscribed lists from the cache."""
        if self._cache is None:
            return 0
        self.subscriptions.restore()
        loaded = 0
        for key in self._cache.keys(f"{self.STORE}:{_PERSONAL}:"):
            owner = key.split(":", 2)[2]
            entries = tuple(
                MuteEntry.from_dict(r["data"]) for r in decode_records(self._cache.get(key)).values()
            )
            self._personal[owner] = entries
            loaded += len(entries)
        for list_id in self.subscriptions:
            records = decode_records(self._cache.get(self._list_key(list_id)))
            version = self._cache.get(self._version_key(list_id)) or {}
            with self._locks.hold(list_id):
                self._lists[list_id] = tuple(MuteEntry.from_dict(r["data"]) for r in records.values())
                self._list_versions[list_id] = int(version.get("created_at", 0))
            loaded += len(records)
        log.info("Restored %d mute entries from cache", loaded)
        return loaded

    def _personal_key(self, owner_pubkey: str) -> str:
        return f"{self.STORE}:{_PERSONAL}:{owner_pubkey}"

    def _list_key(self, list_id: str) -> str:
        return f"{self.STORE}:list:{list_id}"

    def _version_key(self, list_id: str) -> str:
        return f"{self.STORE}-version:{list_id}"


def _record_id(entry: MuteEntry) -> str:
    return f"{entry.kind.value}:{entry.value}"
