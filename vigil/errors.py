"""Exceptions raised by the moderation engine."""

from __future__ import annotations


class VigilError(Exception):
    """Base class for all engine errors."""


class CapacityError(VigilError):
    """A subscription cap was reached; the subscription was not added."""

    def __init__(self, kind: str, limit: int) -> None:
        super().__init__(f"Cannot subscribe to more than {limit} {kind}")
        self.kind = kind
        self.limit = limit


class TransportError(VigilError):
    """The external event source failed to deliver a subscription."""

    def __init__(self, source_id: str, message: str = "") -> None:
        super().__init__(message or f"Transport failure for source {source_id}")
        self.source_id = source_id


class MalformedEventError(VigilError):
    """An event is missing a tag required for its kind."""

    def __init__(self, event_id: str, reason: str) -> None:
        super().__init__(f"Malformed event {event_id or '<no id>'}: {reason}")
        self.event_id = event_id
        self.reason = reason
