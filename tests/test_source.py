"""Tests for background event delivery."""

import asyncio

from vigil.cache import InMemoryCache
from vigil.events.models import EventKind, RawEvent
from vigil.events.source import Feed, InMemoryEventSource
from vigil.moderation.coordinator import Coordinator
from vigil.moderation.models import ModerationAction

NOW = 1_700_000_000


def _note() -> RawEvent:
    return RawEvent(id="note1", pubkey="author1", created_at=NOW - 60, kind=1, content="hello world")


def _report_event(n: int, reporter: str) -> RawEvent:
    return RawEvent(id=f"report{n}", pubkey=reporter, created_at=NOW - n, kind=EventKind.REPORT,
                    tags=(("e", "note1", "spam"),))


def _label_event(labeler: str, value: str = "nudity", created_at: int = NOW - 30) -> RawEvent:
    return RawEvent(id=f"label-{labeler}-{value}", pubkey=labeler, created_at=created_at,
                    kind=EventKind.LABEL, tags=(("L", "MOD"), ("l", value, "MOD"), ("e", "note1")))


def _coordinator(source, cache=None) -> Coordinator:
    return Coordinator(cache=cache or InMemoryCache(), source=source, clock=lambda: NOW)


def test_feed_filter():
    feed = Feed(kind=EventKind.LABEL, authors=frozenset({"lab1"}), since=NOW - 100)
    assert feed.matches(_label_event("lab1"))
    assert not feed.matches(_label_event("lab2"))
    assert not feed.matches(_label_event("lab1", created_at=NOW - 200))
    assert not feed.matches(_report_event(1, "lab1"))


def test_delayed_events_become_visible_after_delivery():
    async def scenario():
        source = InMemoryEventSource()
        coordinator = _coordinator(source)
        coordinator.subscribe_to_network_reports({"r1", "r2"})
        await asyncio.sleep(0.01)

        source.publish(_report_event(1, "r1"), delay=0.05)
        source.publish(_report_event(2, "r2"), delay=0.05)
        before = coordinator.check_content("alice", _note())

        await asyncio.sleep(0.3)
        after = coordinator.check_content("alice", _note())
        await coordinator.stop()
        return before, after

    before, after = asyncio.run(scenario())
    assert before.action == ModerationAction.ALLOW
    assert after.action == ModerationAction.BLUR


def test_backlog_is_delivered_on_subscribe():
    async def scenario():
        source = InMemoryEventSource([_label_event("lab1"), _label_event("lab2")])
        coordinator = _coordinator(source)
        coordinator.subscribe_to_labeler("lab1")
        await asyncio.sleep(0.05)
        counts = coordinator.labels.get_label_counts("note1", "MOD")
        await coordinator.stop()
        return counts

    assert asyncio.run(scenario()) == {"nudity": 1}


def test_transport_failure_degrades_instead_of_failing():
    async def scenario():
        source = InMemoryEventSource()
        source.fail(EventKind.LABEL, "lab1", "relay unreachable")
        coordinator = _coordinator(source)
        for n in range(5):
            coordinator.ingest(_report_event(n, f"reporter{n}"))

        coordinator.subscribe_to_labeler("lab1")
        await asyncio.sleep(0.05)
        degraded = coordinator.check_content("alice", _note())
        status = coordinator.source_status()

        source.recover(EventKind.LABEL, "lab1")
        coordinator.subscribe_to_labeler("lab1")
        await asyncio.sleep(0.01)
        source.publish(_label_event("lab1"))
        await asyncio.sleep(0.05)
        recovered = coordinator.check_content("alice", _note())
        await coordinator.stop()
        return degraded, status, recovered, coordinator.source_status()

    degraded, status, recovered, final_status = asyncio.run(scenario())
    assert degraded.action == ModerationAction.HIDE
    assert degraded.confidence == 0.8
    assert "lab1" in status["labels"]
    assert recovered.confidence == 0.9
    assert final_status["labels"] == {}


def test_failure_mid_stream_marks_source_unavailable():
    async def scenario():
        source = InMemoryEventSource()
        coordinator = _coordinator(source)
        coordinator.subscribe_to_labeler("lab1")
        await asyncio.sleep(0.01)
        source.publish(_label_event("lab1"))
        await asyncio.sleep(0.01)
        source.fail(EventKind.LABEL)
        await asyncio.sleep(0.01)
        result = (coordinator.labels.has_label("note1", "MOD", "nudity"), coordinator.source_status())
        await coordinator.stop()
        return result

    still_labeled, status = asyncio.run(scenario())
    assert still_labeled
    assert list(status["labels"]) == ["lab1"]


def test_unsubscribe_stops_ingestion():
    async def scenario():
        source = InMemoryEventSource()
        coordinator = _coordinator(source)
        coordinator.subscribe_to_labeler("lab1")
        await asyncio.sleep(0.01)
        source.publish(_label_event("lab1"))
        await asyncio.sleep(0.01)
        labeled = coordinator.labels.has_label("note1", "MOD", "nudity")

        coordinator.unsubscribe_from_labeler("lab1")
        source.publish(_label_event("lab1", value="spam"))
        await asyncio.sleep(0.01)
        result = (
            labeled,
            coordinator.labels.get_label_counts("note1", "MOD"),
            coordinator._pump.feeds(),
        )
        await coordinator.stop()
        return result

    labeled, counts, feeds = asyncio.run(scenario())
    assert labeled
    assert counts == {}
    assert feeds == []


def test_mute_list_is_fetched_in_background():
    async def scenario():
        muted = RawEvent(id="list1", pubkey="curator", created_at=NOW, kind=EventKind.MUTE_LIST,
                         tags=(("p", "author1"),))
        source = InMemoryEventSource([muted])
        coordinator = _coordinator(source)
        coordinator.subscribe_to_mute_list("curator")
        immediately = coordinator.check_content("bob", _note())
        await asyncio.sleep(0.05)
        later = coordinator.check_content("bob", _note())
        await coordinator.stop()
        return immediately, later

    immediately, later = asyncio.run(scenario())
    assert immediately.action == ModerationAction.ALLOW
    assert later.action == ModerationAction.HIDE


def test_restart_resumes_from_cursor():
    cache = InMemoryCache()

    async def first_run():
        source = InMemoryEventSource([_label_event("lab1")])
        coordinator = _coordinator(source, cache)
        coordinator.subscribe_to_labeler("lab1")
        await asyncio.sleep(0.05)
        await coordinator.stop()

    async def second_run():
        source = InMemoryEventSource([
            _label_event("lab1", value="gore", created_at=NOW - 1000),
            _label_event("lab1", value="spam", created_at=NOW),
        ])
        coordinator = _coordinator(source, cache)
        coordinator.restore()
        await coordinator.start()
        await asyncio.sleep(0.05)
        counts = coordinator.labels.get_label_counts("note1", "MOD")
        await coordinator.stop()
        return counts

    asyncio.run(first_run())
    assert asyncio.run(second_run()) == {"nudity": 1, "spam": 1}


def test_subscribe_before_start_defers_the_feed():
    source = InMemoryEventSource([_label_event("lab1")])
    coordinator = _coordinator(source)

    assert coordinator.subscribe_to_labeler("lab1")
    assert coordinator.labels.labelers() == ["lab1"]
    assert coordinator._pump.pending() == ["labels:lab1"]

    async def scenario():
        await coordinator.start()
        await asyncio.sleep(0.05)
        result = (
            coordinator._pump.pending(),
            coordinator._pump.feeds(),
            coordinator.labels.get_label_counts("note1", "MOD"),
        )
        await coordinator.stop()
        return result

    pending, feeds, counts = asyncio.run(scenario())
    assert pending == []
    assert "labels:lab1" in feeds
    assert counts == {"nudity": 1}


def test_unsubscribe_drops_deferred_feed():
    coordinator = _coordinator(InMemoryEventSource())
    coordinator.subscribe_to_mute_list("curator")
    coordinator.unsubscribe_from_mute_list("curator")
    assert coordinator._pump.pending() == []


def test_start_restarts_only_dead_feeds():
    async def scenario():
        source = InMemoryEventSource()
        coordinator = _coordinator(source)
        coordinator.subscribe_to_labeler("lab1")
        coordinator.subscribe_to_labeler("lab2")
        await asyncio.sleep(0.01)
        live_task = coordinator._pump._tasks["labels:lab2"]

        source.fail(EventKind.LABEL, "lab1")
        await asyncio.sleep(0.01)
        failed = (coordinator._pump.feeds(), coordinator.source_status()["labels"])

        source.recover(EventKind.LABEL, "lab1")
        await coordinator.start()
        await asyncio.sleep(0.01)
        source.publish(_label_event("lab1"))
        await asyncio.sleep(0.05)
        result = (
            failed,
            coordinator._pump._tasks["labels:lab2"] is live_task,
            coordinator.source_status()["labels"],
            coordinator.labels.has_label("note1", "MOD", "nudity"),
        )
        await coordinator.stop()
        return result

    (feeds_after_failure, unavailable), kept_live, status, labeled = asyncio.run(scenario())
    assert "labels:lab1" not in feeds_after_failure
    assert "labels:lab2" in feeds_after_failure
    assert list(unavailable) == ["lab1"]
    assert kept_live
    assert status == {}
    assert labeled
