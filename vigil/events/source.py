"""Event delivery.

The engine never talks to the network itself. It depends on an injected
``EventSource`` that streams raw events for a ``Feed``, and runs one
background ``asyncio`` task per feed through ``EventPump``. Reads never wait
on these tasks; a decision reflects an event as soon as the pump has handed
it to the coordinator, so staleness is bounded by the transport round-trip.

A feed whose stream raises ``TransportError`` ends and marks its source
unavailable. It stays unavailable until the feed is followed again, either
by re-subscribing or by ``Coordinator.start()``, which restarts every feed
that is not running.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from vigil.errors import TransportError
from vigil.events.models import EventKind, RawEvent
from vigil.stores.subscriptions import SourceTracker

log = logging.getLogger("vigil.pump")


@dataclass(frozen=True)
class Feed:
    """A subscription filter: one kind, optionally restricted to authors."""

    kind: EventKind
    authors: Optional[frozenset[str]] = None
    since: int = 0

    def matches(self, event: RawEvent) -> bool:
        if event.kind != self.kind or event.created_at < self.since:
            return False
        return self.authors is None or event.pubkey in self.authors


class EventSource(Protocol):
    """Transport capability: stream events matching *feed* until cancelled.

    Implementations raise ``TransportError`` when the subscription fails.
    """

    def stream(self, feed: Feed) -> AsyncIterator[RawEvent]: ...


class InMemoryEventSource:
    """Deterministic event source for tests and offline replay.

    Published events are delivered to every open stream whose feed matches,
    after an optional per-event delay. Failures can be scripted per kind and
    author.
    """

    def __init__(self, events: Iterable[RawEvent] = ()) -> None:
        self._backlog: list[RawEvent] = list(events)
        self._queues: list[tuple[Feed, asyncio.Queue]] = []
        self._failures: dict[tuple[int, Optional[str]], str] = {}

    def publish(self, event: RawEvent, delay: float = 0.0) -> None:
        self._backlog.append(event)
        for feed, queue in self._queues:
            if feed.matches(event):
                queue.put_nowait((event, delay))

    def fail(self, kind: EventKind, author: Optional[str] = None, message: str = "connection refused") -> None:
        """Make streams for *kind* (and *author*, if given) raise ``TransportError``.

        Open streams fail on their next delivery; new streams fail on open.
        """
        self._failures[(int(kind), author)] = message
        for feed, queue in self._queues:
            if self._failure_for(feed) is not None:
                queue.put_nowait((None, 0.0))

    def recover(self, kind: EventKind, author: Optional[str] = None) -> None:
        self._failures.pop((int(kind), author), None)

    def _failure_for(self, feed: Feed) -> Optional[str]:
        if (int(feed.kind), None) in self._failures:
            return self._failures[(int(feed.kind), None)]
        for author in sorted(feed.authors or ()):
            if (int(feed.kind), author) in self._failures:
                return self._failures[(int(feed.kind), author)]
        return None

    async def stream(self, feed: Feed) -> AsyncIterator[RawEvent]:
        failure = self._failure_for(feed)
        if failure is not None:
            raise TransportError(feed.kind.name.lower(), failure)

        queue: asyncio.Queue = asyncio.Queue()
        entry = (feed, queue)
        self._queues.append(entry)
        try:
            for event in list(self._backlog):
                if feed.matches(event):
                    yield event
            while True:
                event, delay = await queue.get()
                if event is None:
                    failure = self._failure_for(feed)
                    if failure is not None:
                        raise TransportError(feed.kind.name.lower(), failure)
                    continue
                if delay:
                    await asyncio.sleep(delay)
                yield event
        finally:
            self._queues.remove(entry)


IngestFn = Callable[[RawEvent], bool]


class EventPump:
    """Runs one background task per feed and hands events to *ingest*.

    Feeds followed while no event loop is running are held as pending until
    the next ``follow`` call made from a running loop.
    """

    def __init__(self, source: EventSource, ingest: IngestFn) -> None:
        self._source = source
        self._ingest = ingest
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._pending: dict[str, Feed] = {}

    def follow(self, feed_id: str, feed: Feed, tracker: SourceTracker, source_id: str) -> None:
        """Start (or restart) the task for *feed_id*."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._pending[feed_id] = feed
            log.debug("No running loop, deferring feed %s", feed_id)
            return
        self.unfollow(feed_id)
        self._tasks[feed_id] = loop.create_task(
            self._run(feed_id, feed, tracker, source_id), name=f"vigil-feed-{feed_id}"
        )
        log.info("Following feed %s (since=%s)", feed_id, feed.since)

    def unfollow(self, feed_id: str) -> bool:
        """Cancel the task for *feed_id*; no further events from it are ingested."""
        deferred = self._pending.pop(feed_id, None) is not None
        task = self._tasks.pop(feed_id, None)
        if task is None:
            return deferred
        task.cancel()
        log.info("Stopped feed %s", feed_id)
        return True

    def is_live(self, feed_id: str) -> bool:
        task = self._tasks.get(feed_id)
        return task is not None and not task.done()

    def feeds(self) -> list[str]:
        return sorted(feed_id for feed_id in self._tasks if self.is_live(feed_id))

    def pending(self) -> list[str]:
        return sorted(self._pending)

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log.info("EventPump stopped")

    async def _run(self, feed_id: str, feed: Feed, tracker: SourceTracker, source_id: str) -> None:
        try:
            async for raw in self._source.stream(feed):
                self._ingest(raw)
        except TransportError as e:
            tracker.mark_unavailable(source_id, str(e))
        except Exception:
            tracker.mark_unavailable(source_id, "feed crashed")
            log.exception("Feed %s failed", feed_id)
