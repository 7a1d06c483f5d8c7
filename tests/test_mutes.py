"""Tests for the mute index."""

import pytest

from vigil.cache import InMemoryCache
from vigil.errors import CapacityError
from vigil.events.models import EventKind, RawEvent
from vigil.events.parser import parse_event
from vigil.stores.models import MuteEntry, MuteKind, MuteSource
from vigil.stores.mutes import MuteIndex


def _note(content: str = "hello world", pubkey: str = "author1", event_id: str = "note1",
          tags: tuple = ()) -> RawEvent:
    return RawEvent(id=event_id, pubkey=pubkey, created_at=1_700_000_000, kind=1,
                    tags=tags, content=content)


def _mute_list(owner: str, tags: list, created_at: int = 1_700_000_000):
    raw = RawEvent(id=f"list-{owner}-{created_at}", pubkey=owner, created_at=created_at,
                   kind=EventKind.MUTE_LIST, tags=tuple(tuple(t) for t in tags))
    return parse_event(raw)


def _mute(kind: MuteKind, value: str) -> MuteEntry:
    return MuteEntry(owner_pubkey="", kind=kind, value=value)


def test_personal_pubkey_and_event_mutes():
    index = MuteIndex()
    index.add_personal_mute("alice", _mute(MuteKind.PUBKEY, "author1"))
    index.add_personal_mute("alice", _mute(MuteKind.EVENT_ID, "note2"))

    assert [m.kind for m in index.check_content("alice", _note())] == [MuteKind.PUBKEY]
    assert [m.kind for m in index.check_content("alice", _note(pubkey="x", event_id="note2"))] == [
        MuteKind.EVENT_ID
    ]
    assert index.check_content("alice", _note(pubkey="x", event_id="note3")) == []


def test_keyword_is_case_insensitive_substring():
    index = MuteIndex()
    index.add_personal_mute("alice", _mute(MuteKind.KEYWORD, "Crypto"))
    assert index.check_content("alice", _note("Buy CRYPTOCURRENCY now"))
    assert not index.check_content("alice", _note("nothing to see"))


def test_hashtag_is_case_insensitive_exact():
    index = MuteIndex()
    index.add_personal_mute("alice", _mute(MuteKind.HASHTAG, "#NSFW"))
    assert index.check_content("alice", _note(tags=(("t", "nsfw"),)))
    assert index.check_content("alice", _note("look #Nsfw"))
    assert not index.check_content("alice", _note(tags=(("t", "nsfwart"),)))


def test_returns_every_matching_entry():
    index = MuteIndex()
    index.add_personal_mute("alice", _mute(MuteKind.PUBKEY, "author1"))
    index.add_personal_mute("alice", _mute(MuteKind.KEYWORD, "hello"))
    index.add_personal_mute("alice", _mute(MuteKind.KEYWORD, "world"))
    matches = index.check_content("alice", _note())
    assert [m.value for m in matches] == ["author1", "hello", "world"]
    assert all(m.source == MuteSource.PERSONAL and m.owner_pubkey == "alice" for m in matches)


def test_personal_mutes_only_apply_to_owner():
    index = MuteIndex()
    index.add_personal_mute("alice", _mute(MuteKind.PUBKEY, "author1"))
    assert index.check_content("alice", _note())
    assert index.check_content("bob", _note()) == []


def test_duplicate_and_remove_personal_mute():
    index = MuteIndex()
    assert index.add_personal_mute("alice", _mute(MuteKind.KEYWORD, "spoiler"))
    assert not index.add_personal_mute("alice", _mute(MuteKind.KEYWORD, "spoiler"))
    assert index.remove_personal_mute("alice", MuteKind.KEYWORD, "spoiler")
    assert not index.remove_personal_mute("alice", MuteKind.KEYWORD, "spoiler")
    assert index.personal_mutes("alice") == ()


def test_subscribed_list_requires_subscription():
    index = MuteIndex()
    event = _mute_list("curator", [["p", "author1"]])
    assert not index.ingest_mute_list(event)

    index.subscribe_to_mute_list("curator")
    assert index.ingest_mute_list(event)
    matches = index.check_content("bob", _note())
    assert len(matches) == 1
    assert matches[0].source == MuteSource.SUBSCRIBED
    assert matches[0].list_id == "curator"


def test_newer_list_replaces_older():
    index = MuteIndex()
    index.subscribe_to_mute_list("curator")
    index.ingest_mute_list(_mute_list("curator", [["p", "author1"], ["word", "hello"]], created_at=100))
    index.ingest_mute_list(_mute_list("curator", [["t", "cats"]], created_at=200))
    # Stale list is ignored
    assert not index.ingest_mute_list(_mute_list("curator", [["p", "author1"]], created_at=150))

    assert [e.kind for e in index.list_entries("curator")] == [MuteKind.HASHTAG]
    assert index.check_content("bob", _note()) == []


def test_unsubscribe_purges_only_that_list():
    index = MuteIndex()
    index.add_personal_mute("alice", _mute(MuteKind.PUBKEY, "author1"))
    index.subscribe_to_mute_list("curator1")
    index.subscribe_to_mute_list("curator2")
    index.ingest_mute_list(_mute_list("curator1", [["p", "author1"]]))
    index.ingest_mute_list(_mute_list("curator2", [["word", "hello"]]))

    assert index.unsubscribe_from_mute_list("curator1") == 1

    matches = index.check_content("alice", _note())
    assert [(m.source, m.list_id) for m in matches] == [
        (MuteSource.PERSONAL, None),
        (MuteSource.SUBSCRIBED, "curator2"),
    ]


def test_mute_list_cap():
    index = MuteIndex(max_mute_lists=2)
    index.subscribe_to_mute_list("a")
    index.subscribe_to_mute_list("b")
    with pytest.raises(CapacityError):
        index.subscribe_to_mute_list("c")
    assert list(index.subscriptions) == ["a", "b"]


def test_restore_from_cache():
    cache = InMemoryCache()
    index = MuteIndex(cache)
    index.add_personal_mute("alice", _mute(MuteKind.KEYWORD, "hello"))
    index.subscribe_to_mute_list("curator")
    index.ingest_mute_list(_mute_list("curator", [["p", "author1"]], created_at=100))

    restored = MuteIndex(cache)
    assert restored.restore() == 2
    assert [m.value for m in restored.check_content("alice", _note())] == ["hello", "author1"]
    # The restored list version still rejects stale lists
    assert not restored.ingest_mute_list(_mute_list("curator", [], created_at=50))


class _UnsubscribedAfterFirstCheck:
    """Subscription set that drops *source_id* right after it is first checked."""

    def __init__(self, inner, source_id: str):
        self._inner = inner
        self._source_id = source_id
        self._checked = False

    def __contains__(self, source_id):
        if source_id == self._source_id and not self._checked:
            self._checked = True
            self._inner.unsubscribe(source_id)
            return True
        return source_id in self._inner

    def __getattr__(self, name):
        return getattr(self._inner, name)


def test_unsubscribe_during_ingest_leaves_no_list():
    cache = InMemoryCache()
    index = MuteIndex(cache)
    index.subscribe_to_mute_list("curator")
    index.subscriptions = _UnsubscribedAfterFirstCheck(index.subscriptions, "curator")

    assert not index.ingest_mute_list(_mute_list("curator", [["p", "author1"]]))
    assert index.list_entries("curator") == ()
    assert index.check_content("bob", _note()) == []
    assert cache.keys("mutes") == []
